from __future__ import annotations

import enum
import logging
import os
import shutil
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, BinaryIO, Callable, Mapping, Sequence, Union

from toolchain_proxy.build_cache import purge_stale_cache, should_purge
from toolchain_proxy.command import CoordinationFile, build_tool_command
from toolchain_proxy.config import ProxySettings, configure_logging, load_settings
from toolchain_proxy.container import ContainerHandle
from toolchain_proxy.errors import AttachError, ProxyError, ResolutionError
from toolchain_proxy.identity import ContainerIdentity, resolve_identity
from toolchain_proxy.relay import SignalRelay
from toolchain_proxy.rewrite import PathRewriter, RewriteContext, StreamFilter


LOGGER = logging.getLogger(__name__)

ContainerLoader = Callable[[str, Path, ProxySettings], ContainerHandle]


class ProxyState(enum.Enum):
    RESOLVE = "resolve"
    BOOT = "boot"
    PREPARE = "prepare"
    RUN = "run"
    DRAIN = "drain"
    CLEANUP = "cleanup"
    EXIT = "exit"


@dataclass(frozen=True)
class ToolInvocation:
    tool_name: str
    argv: tuple[str, ...]
    working_directory: Path
    container_name: str
    tool_directory: Path


def _resolve_tool_path(argv0: str, cwd: Path, search_path: str | None) -> str:
    if os.path.isabs(argv0):
        return os.path.normpath(argv0)
    if os.sep in argv0:
        candidate = os.path.join(str(cwd), argv0)
        if os.path.exists(candidate):
            return os.path.normpath(candidate)
    found = shutil.which(argv0, path=search_path)
    if found is None:
        raise ResolutionError(f"Unable to query PATH for: {argv0}")
    return os.path.normpath(os.path.abspath(found))


def resolve_tool_invocation(
    argv0: str,
    args: Sequence[str],
    cwd: Path,
    *,
    search_path: str | None = None,
) -> ToolInvocation:
    """Work out the tool and container from how the proxy was invoked.

    The proxy is installed as ``<lxc_path>/<container>/<tool>``, so the parent
    directory of the invoked path names the container.
    """
    if not argv0:
        raise ResolutionError("Unable to determine path to the container: empty argv[0]")
    tool_path = _resolve_tool_path(argv0, cwd, search_path)
    tool_directory = os.path.dirname(tool_path)
    container_name = os.path.basename(tool_directory)
    if not container_name:
        raise ResolutionError(f"Unable to determine the container from tool path {tool_path}")
    return ToolInvocation(
        tool_name=os.path.basename(tool_path),
        argv=tuple(str(arg) for arg in args),
        working_directory=cwd,
        container_name=container_name,
        tool_directory=Path(tool_directory),
    )


@dataclass(frozen=True)
class ExitStatus:
    raw_code: int = 0
    attach_error: BaseException | None = None

    def exit_code(self) -> int:
        if self.attach_error is not None:
            return 1
        if os.WIFEXITED(self.raw_code):
            return os.WEXITSTATUS(self.raw_code)
        if os.WIFSIGNALED(self.raw_code):
            return 128 + os.WTERMSIG(self.raw_code)
        return 1


@dataclass(frozen=True)
class ProxyStreams:
    stdin: Union[int, IO[Any], None]
    stdout: BinaryIO
    stderr: BinaryIO

    @classmethod
    def from_sys(cls) -> "ProxyStreams":
        # stdin is inherited as-is by the attached process.
        return cls(stdin=None, stdout=sys.stdout.buffer, stderr=sys.stderr.buffer)


@dataclass(frozen=True)
class InvocationContext:
    """Everything resolved once per invocation and shared read-only afterwards."""

    invocation: ToolInvocation
    container: ContainerHandle
    identity: ContainerIdentity
    rewrite: RewriteContext
    coordination_file: CoordinationFile


class ToolProxy:
    def __init__(
        self,
        invocation: ToolInvocation,
        settings: ProxySettings,
        *,
        streams: ProxyStreams | None = None,
        container_loader: ContainerLoader | None = None,
    ) -> None:
        self.invocation = invocation
        self.settings = settings
        self.streams = streams or ProxyStreams.from_sys()
        self.container_loader = container_loader or ContainerHandle.load
        self.state = ProxyState.RESOLVE

    def _enter(self, state: ProxyState) -> None:
        LOGGER.debug("Proxy for %s: %s -> %s", self.invocation.tool_name, self.state.value, state.value)
        self.state = state

    @property
    def lxc_path(self) -> Path:
        if self.settings.lxc_path is not None:
            return self.settings.lxc_path
        return self.invocation.tool_directory.parent

    def resolve(self) -> InvocationContext:
        self._enter(ProxyState.RESOLVE)
        container = self.container_loader(self.invocation.container_name, self.lxc_path, self.settings)
        rootfs = container.rootfs()
        identity = resolve_identity(container.distribution)
        return InvocationContext(
            invocation=self.invocation,
            container=container,
            identity=identity,
            rewrite=RewriteContext.for_tool(self.invocation.tool_name, rootfs),
            coordination_file=CoordinationFile.create_name(self.settings.coordination_dir),
        )

    def boot(self, context: InvocationContext) -> None:
        self._enter(ProxyState.BOOT)
        context.container.boot_if_needed(self.settings.boot_timeout)

    def run(self) -> int:
        try:
            context = self.resolve()
            self.boot(context)
            status = self.execute(context)
        except ProxyError as exc:
            exc.show()
            status = ExitStatus(attach_error=exc)
        except KeyboardInterrupt:
            # Only reachable before the relay handlers are installed.
            LOGGER.debug("Proxy for %s interrupted during %s.", self.invocation.tool_name, self.state.value)
            status = ExitStatus(raw_code=int(signal.SIGINT))
        self._enter(ProxyState.EXIT)
        return status.exit_code()

    def execute(self, context: InvocationContext) -> ExitStatus:
        self._enter(ProxyState.PREPARE)
        invocation = context.invocation
        rewriter = PathRewriter(context.rewrite)
        if should_purge(invocation.tool_name, invocation.argv):
            purge_stale_cache(invocation.working_directory)
        command = build_tool_command(
            invocation.tool_name,
            [rewriter.to_container(arg) for arg in invocation.argv],
            context.coordination_file,
        )

        try:
            stdout_r, stdout_w = os.pipe()
        except OSError as exc:
            raise ProxyError(f"Error creating the stdout pipe: {exc}") from exc
        try:
            stderr_r, stderr_w = os.pipe()
        except OSError as exc:
            os.close(stdout_r)
            os.close(stdout_w)
            raise ProxyError(f"Error creating the stderr pipe: {exc}") from exc

        filters = [
            StreamFilter(stdout_r, self.streams.stdout, rewriter, "stdout"),
            StreamFilter(stderr_r, self.streams.stderr, rewriter, "stderr"),
        ]
        with SignalRelay(context.container, context.coordination_file) as relay:
            for stream_filter in filters:
                relay.spawn(stream_filter)
            try:
                self._enter(ProxyState.RUN)
                try:
                    raw_code = context.container.attach_run(
                        command,
                        identity=context.identity,
                        cwd=invocation.working_directory,
                        env=self.settings.extra_env,
                        clear_env=True,
                        stdin=self.streams.stdin,
                        stdout=stdout_w,
                        stderr=stderr_w,
                    )
                    status = ExitStatus(raw_code=raw_code)
                except AttachError as exc:
                    status = ExitStatus(attach_error=exc)
                finally:
                    self._enter(ProxyState.DRAIN)
                    os.close(stdout_w)
                    os.close(stderr_w)
                    for stream_filter in filters:
                        stream_filter.join()
            finally:
                self._enter(ProxyState.CLEANUP)
                context.coordination_file.remove()

        if isinstance(status.attach_error, ProxyError):
            status.attach_error.show()
        return status


def run_proxy(
    argv: Sequence[str],
    *,
    cwd: Path | None = None,
    environ: Mapping[str, str] | None = None,
    streams: ProxyStreams | None = None,
) -> int:
    source = os.environ if environ is None else environ
    try:
        settings = load_settings(source)
    except ProxyError as exc:
        exc.show()
        return 1
    configure_logging(settings.log_level, settings.log_file)

    try:
        working_directory = cwd or Path(os.getcwd())
    except OSError as exc:
        ResolutionError(f"Unable to get working directory: {exc}").show()
        return 1

    try:
        invocation = resolve_tool_invocation(
            argv[0] if argv else "",
            list(argv[1:]),
            working_directory,
            search_path=source.get("PATH"),
        )
    except ProxyError as exc:
        exc.show()
        return 1
    return ToolProxy(invocation, settings, streams=streams).run()
