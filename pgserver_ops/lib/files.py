from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def write_text(
    path: str | Path,
    contents: str,
    *,
    mode: Optional[int] = None,
    dry_run: bool = False,
) -> None:
    """Write a file atomically (temp file + rename) so readers never see a partial config."""

    p = Path(path)
    if dry_run:
        logger.info("Would write %s", str(p))
        return
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_name(f".{p.name}.tmp")
    tmp.write_text(contents, encoding="utf-8")
    if mode is not None:
        os.chmod(tmp, mode)
    os.replace(tmp, p)


def set_owner(path: str | Path, user: str = "postgres", group: str = "postgres", *, dry_run: bool = False) -> bool:
    """Best-effort chown; the owner may not exist on dev machines."""

    if dry_run:
        logger.info("Would chown %s:%s %s", user, group, str(path))
        return True
    try:
        shutil.chown(str(path), user=user, group=group)
        return True
    except (LookupError, PermissionError, FileNotFoundError) as e:
        logger.debug("chown %s:%s %s skipped: %s", user, group, path, e)
        return False


def backup_file(path: str | Path, suffix: str, *, dry_run: bool = False) -> Optional[Path]:
    """Copy `path` to `<path>.bak.<suffix>`; returns None when there is nothing to back up."""

    p = Path(path)
    if not p.is_file():
        return None
    dst = p.with_name(f"{p.name}.bak.{suffix}")
    if dry_run:
        logger.info("Would back up %s -> %s", str(p), str(dst))
        return dst
    shutil.copy2(p, dst)
    logger.info("Backed up %s -> %s", str(p), str(dst))
    return dst


def copy_tree(src: str | Path, dst: str | Path, *, dry_run: bool = False) -> None:
    s = Path(src)
    d = Path(dst)
    if not s.exists():
        raise FileNotFoundError(str(src))

    if dry_run:
        logger.info("Would copy tree %s -> %s", str(s), str(d))
        return

    d.mkdir(parents=True, exist_ok=True)
    for item in s.rglob("*"):
        rel = item.relative_to(s)
        out = d / rel
        if item.is_dir():
            out.mkdir(parents=True, exist_ok=True)
        else:
            out.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(item, out)


def remove_tree(path: str | Path, *, dry_run: bool = False) -> None:
    p = Path(path)
    if not p.exists():
        return
    if dry_run:
        logger.info("Would remove %s", str(p))
        return
    shutil.rmtree(p)
    logger.info("Removed %s", str(p))
