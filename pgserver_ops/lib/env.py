from __future__ import annotations

import shlex
import shutil
import sys
from dataclasses import dataclass
from typing import Sequence

CLI_NAME = "pgserver-ops"


@dataclass(frozen=True)
class Paths:
    conf_dir: str = "/etc/pgserver-ops"
    state_default: str = "/var/lib/pgserver-ops/state.json"
    log_default: str = "/var/log/server_init.log"
    pg_lib_root: str = "/var/lib/postgresql"
    pg_conf_root: str = "/etc/postgresql"


PATHS = Paths()


def cli_invocation(*args: str, global_args: Sequence[str] = ()) -> str:
    """Shell command line that re-invokes this tool (for systemd units and `at` jobs).

    `global_args` go before the subcommand, e.g. `ServerConfig.cli_globals`.
    """

    exe = shutil.which(CLI_NAME)
    base = [exe] if exe else [sys.executable, "-m", "pgserver_ops"]
    return " ".join(shlex.quote(a) for a in [*base, *global_args, *args])
