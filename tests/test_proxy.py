from __future__ import annotations

import io
import json
import os
import shutil
import signal
import subprocess
import tempfile
import threading
import time
import unittest
from pathlib import Path
from typing import Any, Sequence
from unittest.mock import patch

import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from toolchain_proxy.build_cache import purge_stale_cache, should_purge
from toolchain_proxy.config import CONFIG_FILE_ENV, ProxySettings
from toolchain_proxy.container import ContainerHandle, wait_status_from_returncode
from toolchain_proxy.errors import AttachError, ResolutionError
from toolchain_proxy.proxy import (
    ExitStatus,
    ProxyState,
    ProxyStreams,
    ToolInvocation,
    ToolProxy,
    resolve_tool_invocation,
    run_proxy,
)


ROOTFS = "/srv/containers/buildA/rootfs"


class LocalContainer(ContainerHandle):
    """Runs attached commands on the host instead of inside a container."""

    def boot_if_needed(self, *_args: Any, **_kwargs: Any) -> None:
        return None

    def attach_run(
        self,
        command: Sequence[str],
        *,
        identity: Any = None,
        cwd: Any = None,
        env: Any = None,
        clear_env: bool = False,
        stdin: Any = None,
        stdout: Any = None,
        stderr: Any = None,
    ) -> int:
        del identity, clear_env
        process = subprocess.Popen(
            list(command),
            cwd=str(cwd) if cwd else None,
            env={**os.environ, **dict(env or {})},
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
            start_new_session=True,
        )
        return wait_status_from_returncode(process.wait())


class RecordingContainer(LocalContainer):
    status = 0
    error: AttachError | None = None

    def attach_run(self, command: Sequence[str], **kwargs: Any) -> int:
        self.commands = getattr(self, "commands", [])
        self.commands.append((list(command), kwargs))
        if self.error is not None:
            raise self.error
        return self.status


def _write_container(lxc_path: Path, name: str, distribution: str = "link-motion-autoos") -> None:
    container_dir = lxc_path / name
    container_dir.mkdir(parents=True)
    (container_dir / "config").write_text(f"lxc.rootfs.path = dir:{ROOTFS}\n", encoding="utf-8")
    (container_dir / "config-lm").write_text(
        json.dumps({"name": name, "distribution": distribution, "architecture": "armhf"}),
        encoding="utf-8",
    )


class ExitStatusTests(unittest.TestCase):
    def test_normal_exit_codes_pass_through(self) -> None:
        self.assertEqual(ExitStatus(raw_code=0).exit_code(), 0)
        self.assertEqual(ExitStatus(raw_code=7 << 8).exit_code(), 7)
        self.assertEqual(ExitStatus(raw_code=255 << 8).exit_code(), 255)

    def test_signal_death_maps_above_128(self) -> None:
        self.assertEqual(ExitStatus(raw_code=int(signal.SIGINT)).exit_code(), 130)
        self.assertEqual(ExitStatus(raw_code=int(signal.SIGKILL)).exit_code(), 137)

    def test_attach_error_is_failure(self) -> None:
        self.assertEqual(ExitStatus(raw_code=0, attach_error=AttachError("boom")).exit_code(), 1)

    def test_stopped_status_is_failure(self) -> None:
        self.assertEqual(ExitStatus(raw_code=0x137F).exit_code(), 1)


class ResolveToolInvocationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.tmp_path = Path(self.tmp.name)
        self.container_dir = self.tmp_path / "buildA"
        self.container_dir.mkdir()
        for tool in ("make", "qmake"):
            path = self.container_dir / tool
            path.write_text("#!/bin/sh\n", encoding="utf-8")
            path.chmod(0o755)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_absolute_path(self) -> None:
        invocation = resolve_tool_invocation("/var/lib/x/containers/buildA/gcc", ["-c", "main.c"], self.tmp_path)
        self.assertEqual(invocation.tool_name, "gcc")
        self.assertEqual(invocation.container_name, "buildA")
        self.assertEqual(invocation.tool_directory, Path("/var/lib/x/containers/buildA"))
        self.assertEqual(invocation.argv, ("-c", "main.c"))
        self.assertEqual(invocation.working_directory, self.tmp_path)

    def test_relative_path_from_working_directory(self) -> None:
        invocation = resolve_tool_invocation("buildA/make", [], self.tmp_path)
        self.assertEqual(invocation.tool_name, "make")
        self.assertEqual(invocation.tool_directory, self.container_dir)

    def test_bare_name_searches_path(self) -> None:
        invocation = resolve_tool_invocation("qmake", ["-query"], self.tmp_path, search_path=str(self.container_dir))
        self.assertEqual(invocation.tool_name, "qmake")
        self.assertEqual(invocation.container_name, "buildA")

    def test_bare_name_missing_from_path(self) -> None:
        with self.assertRaises(ResolutionError) as ctx:
            resolve_tool_invocation("cmake", [], self.tmp_path, search_path=str(self.tmp_path / "empty"))
        self.assertIn("Unable to query PATH for: cmake", ctx.exception.message)

    def test_empty_argv0(self) -> None:
        with self.assertRaises(ResolutionError):
            resolve_tool_invocation("", [], self.tmp_path)


class ToolProxyTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.tmp_path = Path(self.tmp.name)
        self.lxc_path = self.tmp_path / "containers"
        self.work_dir = self.tmp_path / "work"
        self.coordination_dir = self.tmp_path / "coord"
        self.work_dir.mkdir()
        self.coordination_dir.mkdir()
        _write_container(self.lxc_path, "buildA")
        self.settings = ProxySettings(lxc_path=self.lxc_path, coordination_dir=str(self.coordination_dir))
        self.stdout = io.BytesIO()
        self.stderr = io.BytesIO()
        self.streams = ProxyStreams(stdin=subprocess.DEVNULL, stdout=self.stdout, stderr=self.stderr)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _proxy(
        self,
        tool: str,
        args: Sequence[str],
        *,
        loader: Any = LocalContainer.load,
        container: str = "buildA",
    ) -> ToolProxy:
        invocation = ToolInvocation(
            tool_name=tool,
            argv=tuple(args),
            working_directory=self.work_dir,
            container_name=container,
            tool_directory=self.lxc_path / container,
        )
        return ToolProxy(invocation, self.settings, streams=self.streams, container_loader=loader)

    def _pidfiles(self) -> list[Path]:
        return sorted(self.coordination_dir.glob("*.pid"))

    @unittest.skipUnless(Path("/bin/bash").exists(), "requires /bin/bash")
    def test_output_is_rewritten_and_exit_code_propagated(self) -> None:
        script = (
            "touch marker; "
            "printf '/usr/include/foo.h:10: error\\n'; "
            "printf 'locale=%s\\n' \"$LC_ALL\"; "
            "printf 'partial /etc/x' >&2; "
            "exit 7"
        )
        proxy = self._proxy("sh", ["-c", script])

        exit_code = proxy.run()

        self.assertEqual(exit_code, 7)
        self.assertIs(proxy.state, ProxyState.EXIT)
        lines = self.stdout.getvalue().decode().splitlines()
        self.assertEqual(lines, [f"{ROOTFS}/usr/include/foo.h:10: error", "locale=C"])
        self.assertTrue((self.work_dir / "marker").exists())
        self.assertEqual(self.stderr.getvalue(), f"partial {ROOTFS}/etc/x".encode())
        self.assertEqual(self._pidfiles(), [])

    @unittest.skipUnless(Path("/bin/bash").exists(), "requires /bin/bash")
    def test_arguments_are_mapped_into_container_paths(self) -> None:
        proxy = self._proxy("echo", [f"-I{ROOTFS}/usr/include", "it's"])
        self.assertEqual(proxy.run(), 0)
        self.assertEqual(self.stdout.getvalue(), f"-I{ROOTFS}/usr/include it's\n".encode())

    @unittest.skipUnless(
        Path("/bin/bash").exists() and shutil.which("ps") is not None,
        "requires /bin/bash and ps",
    )
    def test_interrupt_is_relayed_to_tool_process_group(self) -> None:
        proxy = self._proxy("sleep", ["30"])
        main_ident = threading.main_thread().ident
        sent = threading.Event()

        def interrupt_when_started() -> None:
            deadline = time.monotonic() + 10
            while time.monotonic() < deadline:
                for pidfile in self._pidfiles():
                    if pidfile.read_text(encoding="utf-8").strip():
                        signal.pthread_kill(main_ident, signal.SIGINT)
                        sent.set()
                        return
                time.sleep(0.02)

        interrupter = threading.Thread(target=interrupt_when_started, daemon=True)
        started = time.monotonic()
        interrupter.start()
        exit_code = proxy.run()
        interrupter.join(timeout=5)

        self.assertTrue(sent.is_set())
        self.assertEqual(exit_code, 128 + int(signal.SIGINT))
        self.assertLess(time.monotonic() - started, 20)
        self.assertEqual(self._pidfiles(), [])
        self.assertIs(proxy.state, ProxyState.EXIT)

    def test_missing_container_exits_one(self) -> None:
        proxy = self._proxy("make", [], container="ghost")
        self.assertEqual(proxy.run(), 1)
        self.assertIs(proxy.state, ProxyState.EXIT)

    def test_unknown_distribution_exits_one(self) -> None:
        _write_container(self.lxc_path, "stranger", distribution="debian")
        proxy = self._proxy("make", [], container="stranger", loader=RecordingContainer.load)
        self.assertEqual(proxy.run(), 1)

    def test_attach_failure_exits_one_and_cleans_up(self) -> None:
        def loader(name: str, lxc_path: Path, settings: ProxySettings) -> RecordingContainer:
            container = RecordingContainer.load(name, lxc_path, settings)
            container.error = AttachError("lxc-attach: not found")
            return container

        proxy = self._proxy("make", ["all"], loader=loader)
        self.assertEqual(proxy.run(), 1)
        self.assertIs(proxy.state, ProxyState.EXIT)
        self.assertEqual(self._pidfiles(), [])

    def test_attach_receives_identity_environment_and_working_directory(self) -> None:
        captured: list[RecordingContainer] = []

        def loader(name: str, lxc_path: Path, settings: ProxySettings) -> RecordingContainer:
            container = RecordingContainer.load(name, lxc_path, settings)
            captured.append(container)
            return container

        self.settings = ProxySettings(
            lxc_path=self.lxc_path,
            coordination_dir=str(self.coordination_dir),
            extra_env={"PKG_CONFIG_PATH": "/usr/lib/pkgconfig"},
        )
        proxy = self._proxy("make", ["-j4"], loader=loader)
        self.assertEqual(proxy.run(), 0)

        command, kwargs = captured[0].commands[0]
        self.assertIn("LC_ALL=C exec make -j4", command[2])
        self.assertIn(str(self.coordination_dir), command[2])
        self.assertEqual(kwargs["identity"].uid, 20000)
        self.assertEqual(kwargs["identity"].username, "org.c4c.ui_cluster")
        self.assertEqual(kwargs["cwd"], self.work_dir)
        self.assertEqual(kwargs["env"], {"PKG_CONFIG_PATH": "/usr/lib/pkgconfig"})
        self.assertTrue(kwargs["clear_env"])

    def test_lxc_path_defaults_to_parent_of_tool_directory(self) -> None:
        self.settings = ProxySettings(coordination_dir=str(self.coordination_dir))
        proxy = self._proxy("make", [], loader=RecordingContainer.load)
        self.assertEqual(proxy.lxc_path, self.lxc_path)
        self.assertEqual(proxy.run(), 0)

    def test_unremovable_coordination_file_keeps_tool_exit_code(self) -> None:
        def loader(name: str, lxc_path: Path, settings: ProxySettings) -> RecordingContainer:
            container = RecordingContainer.load(name, lxc_path, settings)
            container.status = 7 << 8
            return container

        proxy = self._proxy("make", ["all"], loader=loader)
        with patch(
            "toolchain_proxy.command.os.remove",
            side_effect=PermissionError(1, "Operation not permitted"),
        ) as remove_call:
            exit_code = proxy.run()

        self.assertEqual(exit_code, 7)
        self.assertIs(proxy.state, ProxyState.EXIT)
        remove_call.assert_called_once()

    def test_interrupt_before_attach_exits_cleanly(self) -> None:
        def interrupted_boot(*_args: Any, **_kwargs: Any) -> None:
            raise KeyboardInterrupt

        def loader(name: str, lxc_path: Path, settings: ProxySettings) -> RecordingContainer:
            container = RecordingContainer.load(name, lxc_path, settings)
            container.boot_if_needed = interrupted_boot  # type: ignore[method-assign]
            return container

        proxy = self._proxy("make", ["all"], loader=loader)
        self.assertEqual(proxy.run(), 128 + int(signal.SIGINT))
        self.assertIs(proxy.state, ProxyState.EXIT)
        self.assertEqual(self._pidfiles(), [])

    def test_cmake_configure_purges_stale_cache(self) -> None:
        (self.work_dir / "CMakeCache.txt").write_text("CMAKE_HOME_DIRECTORY:INTERNAL=/src\n", encoding="utf-8")
        (self.work_dir / "CMakeFiles").mkdir()
        (self.work_dir / "CMakeFiles" / "rules.make").write_text("", encoding="utf-8")
        (self.work_dir / "Makefile").write_text("all:\n", encoding="utf-8")
        (self.work_dir / "main.c").write_text("int main(void){return 0;}\n", encoding="utf-8")

        proxy = self._proxy("cmake", [".."], loader=RecordingContainer.load)
        self.assertEqual(proxy.run(), 0)

        self.assertEqual(sorted(p.name for p in self.work_dir.iterdir()), ["main.c"])

    def test_cmake_build_keeps_cache(self) -> None:
        (self.work_dir / "CMakeCache.txt").write_text("", encoding="utf-8")
        proxy = self._proxy("cmake", ["--build", "."], loader=RecordingContainer.load)
        self.assertEqual(proxy.run(), 0)
        self.assertTrue((self.work_dir / "CMakeCache.txt").exists())


class BuildCacheTests(unittest.TestCase):
    def test_should_purge_only_for_configuring_cmake(self) -> None:
        self.assertTrue(should_purge("cmake", ["..", "-DCMAKE_BUILD_TYPE=Release"]))
        self.assertFalse(should_purge("cmake", ["--build", "."]))
        self.assertFalse(should_purge("cmake", ["--help"]))
        self.assertFalse(should_purge("make", ["clean"]))

    def test_purge_without_cache_is_noop(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            (Path(tmp) / "Makefile").write_text("all:\n", encoding="utf-8")
            self.assertFalse(purge_stale_cache(Path(tmp)))
            self.assertTrue((Path(tmp) / "Makefile").exists())


class RunProxyTests(unittest.TestCase):
    def test_unresolvable_tool_exits_one(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            environ = {"PATH": str(Path(tmp) / "bin"), CONFIG_FILE_ENV: str(Path(tmp) / "missing.toml")}
            with patch("toolchain_proxy.proxy.configure_logging"):
                code = run_proxy(["make", "all"], cwd=Path(tmp), environ=environ)
        self.assertEqual(code, 1)

    def test_resolved_invocation_is_handed_to_tool_proxy(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            environ = {CONFIG_FILE_ENV: str(Path(tmp) / "missing.toml")}
            with patch("toolchain_proxy.proxy.configure_logging"), patch(
                "toolchain_proxy.proxy.ToolProxy.run", autospec=True, return_value=5
            ) as run_call:
                code = run_proxy(["/srv/containers/buildA/make", "-j2"], cwd=Path(tmp), environ=environ)
        self.assertEqual(code, 5)
        proxy = run_call.call_args.args[0]
        self.assertEqual(proxy.invocation.container_name, "buildA")
        self.assertEqual(proxy.invocation.argv, ("-j2",))
        self.assertEqual(proxy.lxc_path, Path("/srv/containers"))


if __name__ == "__main__":
    unittest.main()
