from __future__ import annotations

import os
import sys
from dataclasses import replace
from pathlib import Path

import click

from toolchain_proxy.config import LXC_PATH_ENV, PROG_NAME, configure_logging, load_settings
from toolchain_proxy.errors import ConfigError
from toolchain_proxy.proxy import ToolInvocation, ToolProxy, run_proxy


def _is_direct_invocation(argv0: str) -> bool:
    name = os.path.basename(argv0 or "")
    return name in {PROG_NAME, "toolchain_proxy"} or name.endswith(".py")


@click.command(
    name=PROG_NAME,
    help="Run a toolchain command inside a build container",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.option(
    "--lxc-path",
    default=None,
    type=click.Path(file_okay=False, path_type=Path),
    help=f"Directory holding the container definitions (default: ${LXC_PATH_ENV})",
)
@click.argument("container")
@click.argument("tool")
@click.argument("tool_args", nargs=-1, type=click.UNPROCESSED)
def cli(lxc_path: Path | None, container: str, tool: str, tool_args: tuple[str, ...]) -> None:
    settings = load_settings()
    if lxc_path is not None:
        settings = replace(settings, lxc_path=lxc_path.expanduser())
    if settings.lxc_path is None:
        raise ConfigError(f"No container directory configured; pass --lxc-path or set {LXC_PATH_ENV}")
    if not container or "/" in container:
        raise click.BadParameter(f"Invalid container name: {container!r}", param_hint="CONTAINER")
    if not tool or "/" in tool:
        raise click.BadParameter(f"Invalid tool name: {tool!r} (expected a bare command name)", param_hint="TOOL")
    configure_logging(settings.log_level, settings.log_file)

    invocation = ToolInvocation(
        tool_name=tool,
        argv=tuple(tool_args),
        working_directory=Path.cwd(),
        container_name=container,
        tool_directory=settings.lxc_path / container,
    )
    sys.exit(ToolProxy(invocation, settings).run())


def main() -> None:
    if not sys.argv or _is_direct_invocation(sys.argv[0]):
        cli()
        return
    raise SystemExit(run_proxy(sys.argv))


if __name__ == "__main__":
    main()
