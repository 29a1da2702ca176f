from __future__ import annotations

import enum
import logging
import os
import posixpath
import re
import threading
from dataclasses import dataclass
from typing import BinaryIO


LOGGER = logging.getLogger(__name__)

TOP_LEVEL_DIRS = (
    "var",
    "bin",
    "boot",
    "dev",
    "etc",
    "lib",
    "lib64",
    "media",
    "mnt",
    "opt",
    "proc",
    "root",
    "run",
    "sbin",
    "srv",
    "sys",
    "usr",
)
BUILD_VARIABLE_TOOLS = frozenset({"qmake"})
BUILD_VARIABLE_NAME = b"QT_HOST_BINS"
LINE_TERMINATOR = b"\n"
READ_CHUNK_SIZE = 64 * 1024


class RewriteMode(enum.Enum):
    NORMAL = "normal"
    BUILD_VARIABLE = "build_variable"


@dataclass(frozen=True)
class RewriteContext:
    container_rootfs: str
    mode: RewriteMode = RewriteMode.NORMAL

    @classmethod
    def for_tool(cls, tool_name: str, container_rootfs: str) -> "RewriteContext":
        mode = RewriteMode.BUILD_VARIABLE if tool_name in BUILD_VARIABLE_TOOLS else RewriteMode.NORMAL
        return cls(container_rootfs=container_rootfs, mode=mode)

    @property
    def tool_directory(self) -> str:
        return posixpath.normpath(posixpath.join(self.container_rootfs, ".."))


class PathRewriter:
    """Moves absolute paths between the container frame and the host frame.

    Output flows container -> host and gets the rootfs prefix inserted in
    front of paths under the well-known top-level directories. Arguments flow
    host -> container and get the rootfs prefix removed.
    """

    def __init__(self, context: RewriteContext) -> None:
        self.context = context
        self._rootfs = os.fsencode(context.container_rootfs)
        dirs = b"|".join(re.escape(name.encode("ascii")) for name in TOP_LEVEL_DIRS)
        self._pattern = re.compile(
            rb"(?P<lead>^|[^\w+]|\s+|-\w)"
            rb"(?:(?P<rooted>" + re.escape(self._rootfs) + rb")(?![\w.-])"
            rb"|/(?P<dir>" + dirs + rb")(?!\w))"
        )
        self._build_variable_line = (
            BUILD_VARIABLE_NAME + b":" + os.fsencode(context.tool_directory)
        )

    def _replace(self, match: re.Match[bytes]) -> bytes:
        if match.group("rooted") is not None:
            return match.group(0)
        return match.group("lead") + self._rootfs + b"/" + match.group("dir")

    def to_host(self, line: bytes) -> bytes:
        if self.context.mode is RewriteMode.BUILD_VARIABLE and line.startswith(BUILD_VARIABLE_NAME + b":"):
            terminator = LINE_TERMINATOR if line.endswith(LINE_TERMINATOR) else b""
            return self._build_variable_line + terminator
        return self._pattern.sub(self._replace, line)

    def to_container(self, arg: str) -> str:
        rootfs = self.context.container_rootfs
        if not rootfs or rootfs == "/":
            return arg
        return arg.replace(rootfs, "")


class StreamFilter(threading.Thread):
    """Drains one pipe read-end, rewriting it line by line onto ``sink``.

    A trailing partial line is rewritten and flushed once the pipe reports
    end of stream. Owns ``source_fd`` and closes it when done.
    """

    def __init__(self, source_fd: int, sink: BinaryIO, rewriter: PathRewriter, name: str) -> None:
        super().__init__(name=f"stream-filter-{name}", daemon=True)
        self.source_fd = source_fd
        self.sink = sink
        self.rewriter = rewriter
        self.stream_name = name
        self.error: BaseException | None = None
        self._sink_broken = False

    def _emit(self, line: bytes) -> None:
        if self._sink_broken:
            return
        try:
            self.sink.write(self.rewriter.to_host(line))
            self.sink.flush()
        except OSError as exc:
            # The attached process must never block on a full pipe.
            LOGGER.debug("Sink for %s unusable (%s), discarding further output.", self.stream_name, exc)
            self._sink_broken = True

    def run(self) -> None:
        pending = bytearray()
        try:
            with os.fdopen(self.source_fd, "rb", buffering=0) as source:
                while True:
                    chunk = source.read(READ_CHUNK_SIZE)
                    if not chunk:
                        break
                    pending.extend(chunk)
                    start = 0
                    while True:
                        end = pending.find(LINE_TERMINATOR, start)
                        if end < 0:
                            break
                        self._emit(bytes(pending[start:end + 1]))
                        start = end + 1
                    del pending[:start]
            if pending:
                self._emit(bytes(pending))
        except Exception as exc:
            self.error = exc
            LOGGER.warning("Output filter for %s failed: %s", self.stream_name, exc)
