from __future__ import annotations

import logging
import os
import queue
import signal
import subprocess
import threading
from types import FrameType
from typing import Any, Protocol, Sequence

from toolchain_proxy.command import CoordinationFile, build_kill_command
from toolchain_proxy.errors import AttachError


LOGGER = logging.getLogger(__name__)

RELAYED_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)
RELAY_STOP_TIMEOUT_SECONDS = 5.0


class AttachRunner(Protocol):
    name: str

    def attach_run(self, command: Sequence[str], **kwargs: Any) -> int: ...


class SignalRelay:
    """Forwards terminal-class signals to the in-container process group.

    There is no host-visible pid for the attached process, so every relayed
    signal is a second attach that reads the coordination file and signals
    the recorded shell's process group. Delivery is best effort.
    """

    def __init__(
        self,
        container: AttachRunner,
        coordination_file: CoordinationFile,
        signals: Sequence[signal.Signals] = RELAYED_SIGNALS,
    ) -> None:
        self.container = container
        self.coordination_file = coordination_file
        self.signals = tuple(signals)
        self._queue: queue.Queue[int | None] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._previous_handlers: dict[signal.Signals, Any] = {}

    def __enter__(self) -> "SignalRelay":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        del frame
        self._queue.put_nowait(signum)

    def start(self) -> None:
        if self._thread is not None:
            return
        for sig in self.signals:
            self._previous_handlers[sig] = signal.signal(sig, self._handle_signal)
        self._thread = threading.Thread(target=self._run, name="signal-relay", daemon=True)
        self.spawn(self._thread)

    def spawn(self, thread: threading.Thread) -> None:
        """Start ``thread`` with the relayed signals blocked.

        The relayed signals must only ever be delivered to the main thread,
        which is the one blocked in the attach wait.
        """
        previous_mask = signal.pthread_sigmask(signal.SIG_BLOCK, self.signals)
        try:
            thread.start()
        finally:
            signal.pthread_sigmask(signal.SIG_SETMASK, previous_mask)

    def stop(self) -> None:
        for sig, previous in self._previous_handlers.items():
            signal.signal(sig, previous)
        self._previous_handlers.clear()
        thread = self._thread
        if thread is None:
            return
        self._queue.put(None)
        thread.join(timeout=RELAY_STOP_TIMEOUT_SECONDS)
        self._thread = None

    def _run(self) -> None:
        while True:
            signum = self._queue.get()
            if signum is None:
                return
            self.relay(signum)

    def relay(self, signum: int) -> None:
        LOGGER.debug("Relaying signal %d to container %s.", signum, self.container.name)
        try:
            status = self.container.attach_run(
                build_kill_command(signum, self.coordination_file),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except AttachError as exc:
            LOGGER.warning("Unable to relay signal %d into container %s: %s", signum, self.container.name, exc.message)
            return
        if os.waitstatus_to_exitcode(status) != 0:
            LOGGER.warning(
                "Relaying signal %d into container %s failed with wait status %d.",
                signum,
                self.container.name,
                status,
            )
