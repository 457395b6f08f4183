from __future__ import annotations

import logging
from typing import Optional

from .command import run_cmd, which

logger = logging.getLogger(__name__)


def send_mail(
    recipient: str,
    subject: str,
    body: str,
    *,
    sender: Optional[str] = None,
    dry_run: bool = False,
) -> bool:
    """Hand a message to the local MTA (msmtp preferred, then sendmail).

    Returns False when no MTA is installed or delivery failed; never raises.
    """

    message = f"Subject: {subject}\n"
    if sender:
        message += f"From: {sender}\n"
    message += f"\n{body}\n"

    for mta in ("msmtp", "sendmail"):
        if which(mta) is None and not dry_run:
            continue
        argv = [mta]
        if sender and mta == "sendmail":
            argv += ["-f", sender]
        argv.append(recipient)
        r = run_cmd(argv, check=False, input_text=message, dry_run=dry_run)
        if r.returncode != 0:
            logger.warning("%s could not deliver to %s: %s", mta, recipient, r.stderr.strip())
            return False
        return True

    logger.info("No MTA installed (msmtp/sendmail); notification not sent")
    return False
