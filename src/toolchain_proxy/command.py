from __future__ import annotations

import logging
import os
import posixpath
import shlex
import signal
import uuid
from dataclasses import dataclass
from typing import Iterable


LOGGER = logging.getLogger(__name__)

SHELL = "/bin/bash"
FORCED_LOCALE = "C"
COORDINATION_FILE_SUFFIX = ".pid"


@dataclass(frozen=True)
class CoordinationFile:
    """Pid file the in-container shell writes so the host can find its process group.

    It lives in a temporary directory that is bind-mounted into the container,
    so the same path names it on both sides.
    """

    path: str

    @classmethod
    def create_name(cls, directory: str = "/tmp") -> "CoordinationFile":
        return cls(posixpath.join(directory, f"{uuid.uuid4().hex}{COORDINATION_FILE_SUFFIX}"))

    def remove(self) -> None:
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            LOGGER.debug("Unable to remove coordination file %s: %s", self.path, exc)


def quote_argument(arg: str) -> str:
    return shlex.quote(str(arg))


def join_arguments(args: Iterable[str]) -> str:
    return " ".join(quote_argument(arg) for arg in args)


def build_tool_command(tool_name: str, args: Iterable[str], coordination_file: CoordinationFile) -> list[str]:
    program = (
        f"echo $$ > {quote_argument(coordination_file.path)}; "
        f"LC_ALL={FORCED_LOCALE} exec {join_arguments([tool_name, *args])}"
    )
    return [SHELL, "-c", program]


def build_kill_command(signum: int | signal.Signals, coordination_file: CoordinationFile) -> list[str]:
    pidfile = quote_argument(coordination_file.path)
    program = (
        f"test -f {pidfile} || exit 0; "
        f"pgid=$(ps -o pgid= -p \"$(cat {pidfile})\" | grep -o '[0-9]*'); "
        f"test -n \"$pgid\" || exit 0; "
        f"kill -{int(signum)} -- -\"$pgid\""
    )
    return [SHELL, "-c", program]
