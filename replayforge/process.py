"""Launching and terminating the controlled game process.

The game is started detached in its own session / process group so it
survives independently of us, while we keep the :class:`subprocess.Popen`
handle to stop it later.  Platform kill semantics live behind a
:class:`Terminator` chosen once, here, rather than at every call site.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

ExitListener = Callable[[int], None]


class Terminator:
    """Platform strategy for stopping a process tree."""

    def interrupt(self, proc: subprocess.Popen) -> None:
        raise NotImplementedError

    def kill(self, proc: subprocess.Popen) -> None:
        raise NotImplementedError


class PosixTerminator(Terminator):
    """Signals the whole process group the game was started in."""

    def _signal(self, proc: subprocess.Popen, sig: int) -> None:
        try:
            os.killpg(os.getpgid(proc.pid), sig)
        except (ProcessLookupError, PermissionError, OSError):
            try:
                proc.send_signal(sig)
            except ProcessLookupError:
                pass

    def interrupt(self, proc: subprocess.Popen) -> None:
        self._signal(proc, signal.SIGTERM)

    def kill(self, proc: subprocess.Popen) -> None:
        self._signal(proc, signal.SIGKILL)


class WindowsTerminator(Terminator):
    """Uses ``taskkill /T`` so child processes go down with the game."""

    def interrupt(self, proc: subprocess.Popen) -> None:
        subprocess.run(
            ["taskkill", "/T", "/PID", str(proc.pid)], capture_output=True
        )

    def kill(self, proc: subprocess.Popen) -> None:
        subprocess.run(
            ["taskkill", "/F", "/T", "/PID", str(proc.pid)], capture_output=True
        )
        try:
            proc.kill()
        except OSError:
            pass


def default_terminator() -> Terminator:
    return WindowsTerminator() if sys.platform == "win32" else PosixTerminator()


class GameProcess:
    """A detached child process plus the listeners interested in its exit."""

    def __init__(
        self,
        popen: subprocess.Popen,
        name: str = "game",
        terminator: Terminator | None = None,
    ) -> None:
        self.popen = popen
        self.name = name
        self.terminator = terminator or default_terminator()
        self._listeners: list[ExitListener] = []
        self._lock = threading.Lock()

    @classmethod
    def launch(
        cls,
        executable: Path,
        args: list[str],
        name: str = "game",
        terminator: Terminator | None = None,
    ) -> "GameProcess":
        kwargs: dict = dict(
            cwd=str(executable.parent),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        if sys.platform == "win32":
            kwargs["creationflags"] = (
                subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.DETACHED_PROCESS
            )
        else:
            kwargs["start_new_session"] = True

        logger.info("Launching %s: %s %s", name, executable, " ".join(args))
        popen = subprocess.Popen([str(executable), *args], **kwargs)
        logger.info("%s PID: %d", name, popen.pid)
        return cls(popen, name=name, terminator=terminator)

    @property
    def pid(self) -> int:
        return self.popen.pid

    @property
    def alive(self) -> bool:
        return self.popen.poll() is None

    def add_exit_listener(self, listener: ExitListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listeners(self) -> None:
        with self._lock:
            self._listeners.clear()

    def notify_exit(self) -> None:
        """Report the exit code to listeners if the process has exited."""
        code = self.popen.poll()
        if code is None:
            return
        with self._lock:
            listeners = list(self._listeners)
            self._listeners.clear()
        for listener in listeners:
            listener(code)

    def interrupt(self) -> None:
        if self.alive:
            self.terminator.interrupt(self.popen)

    def kill(self) -> None:
        if self.alive:
            self.terminator.kill(self.popen)

    def __repr__(self) -> str:
        status = "running" if self.alive else "exited"
        return f"<GameProcess({self.name!r}, pid={self.pid}, {status})>"


def terminate(process: GameProcess, grace: float) -> None:
    """Give *process* up to *grace* seconds to exit, then force-kill it."""
    if not process.alive:
        process.notify_exit()
        return
    try:
        process.popen.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning("Forceful termination of %s (PID %d)", process.name, process.pid)
        process.kill()
        try:
            process.popen.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.error("%s (PID %d) did not exit after kill", process.name, process.pid)
    process.notify_exit()


class ProcessSlot:
    """Holds at most one live process of a kind.

    Claiming the slot for a new process force-terminates whatever still
    occupies it; the old process's listeners are removed first so no stale
    exit notification reaches observers.
    """

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self._lock = threading.Lock()
        self._current: GameProcess | None = None

    @property
    def current(self) -> GameProcess | None:
        return self._current

    def claim(self, process: GameProcess) -> None:
        with self._lock:
            previous, self._current = self._current, process
        if previous is not None and previous is not process:
            self._stop(previous)

    def evict(self) -> None:
        """Force-terminate the occupant, if any, before a new launch."""
        with self._lock:
            previous, self._current = self._current, None
        if previous is not None:
            self._stop(previous)

    def _stop(self, previous: GameProcess) -> None:
        previous.remove_listeners()
        if previous.alive:
            logger.info("Stopping previous %s process (PID %d)", self.kind, previous.pid)
            previous.kill()
            terminate(previous, grace=2.0)

    def release(self, process: GameProcess) -> None:
        with self._lock:
            if self._current is process:
                self._current = None


GAME_SLOT = ProcessSlot("game")
