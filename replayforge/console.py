"""Line-oriented TCP client for the game's remote console.

The game accepts plain-text commands terminated by ``\\n`` on a local port and
answers with free-form text.  It never acknowledges that a seek finished or a
demo loaded, so the channel waits a fixed, per-command delay between writes.
Those delays are a calibrated heuristic kept in :class:`DelayPolicy`; if the
game ever exposes a readiness indicator it should be polled instead.
"""

from __future__ import annotations

import collections
import logging
import socket
import threading
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 2121


class ConsoleConnectionError(RuntimeError):
    """Raised when the console port cannot be reached."""


class ConsoleClosedError(RuntimeError):
    """Raised when the game hangs up before a batch was fully written."""


@dataclass(frozen=True)
class DelayRule:
    prefix: str
    seconds: float


class DelayPolicy:
    """Maps the previously sent command to the wait before the next one."""

    DEFAULT_RULES = (
        DelayRule("demo_gototick", 2.0),
        DelayRule("playdemo", 3.0),
        DelayRule("demo_pause", 0.3),
    )

    def __init__(self, rules: tuple[DelayRule, ...] | None = None) -> None:
        self.rules = tuple(self.DEFAULT_RULES if rules is None else rules)

    def delay_after(self, command: str, base_delay: float) -> float:
        command = command.lstrip()
        for rule in self.rules:
            if command.startswith(rule.prefix):
                return rule.seconds
        return base_delay

    def with_rule(self, prefix: str, seconds: float) -> "DelayPolicy":
        """Return a copy where *prefix* waits *seconds* (overriding any existing rule)."""
        rules = tuple(r for r in self.rules if r.prefix != prefix)
        return DelayPolicy((DelayRule(prefix, seconds),) + rules)


@dataclass(frozen=True)
class CommandEntry:
    ts: float
    cmd: str


class CommandLog:
    """Bounded, thread-safe record of the most recent commands sent."""

    def __init__(self, maxlen: int = 50) -> None:
        self._entries: collections.deque[CommandEntry] = collections.deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def push(self, command: str) -> None:
        with self._lock:
            self._entries.append(CommandEntry(ts=time.time(), cmd=command.strip()))

    def entries(self) -> list[CommandEntry]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


COMMAND_LOG = CommandLog()


class CommandChannel:
    """Sends console commands over short-lived TCP connections.

    Every :meth:`send` / :meth:`send_batch` call opens its own connection
    and closes it once the batch is written.
    """

    def __init__(
        self,
        port: int = DEFAULT_PORT,
        host: str = DEFAULT_HOST,
        policy: DelayPolicy | None = None,
        base_delay: float = 0.5,
        linger: float = 0.5,
        connect_timeout: float = 10.0,
        log: CommandLog | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.policy = policy or DelayPolicy()
        self.base_delay = base_delay
        self.linger = linger
        self.connect_timeout = connect_timeout
        self.log = log if log is not None else COMMAND_LOG

    def send(self, command: str) -> None:
        self.send_batch([command])

    def send_batch(
        self,
        commands: list[str],
        base_delay: float | None = None,
        policy: DelayPolicy | None = None,
    ) -> None:
        """Write *commands* in order on one connection.

        *base_delay* and *policy* override the channel defaults for this batch.

        Raises
        ------
        ConsoleConnectionError
            If the connection cannot be established.
        ConsoleClosedError
            If the connection drops before every command was written.
        """
        if not commands:
            return
        base = self.base_delay if base_delay is None else base_delay
        policy = self.policy if policy is None else policy

        try:
            sock = socket.create_connection(
                (self.host, self.port), timeout=self.connect_timeout
            )
        except OSError as exc:
            raise ConsoleConnectionError(
                f"Could not connect to console at {self.host}:{self.port}: {exc}"
            ) from exc

        logger.debug("Connected to console on port %d", self.port)
        total = len(commands)
        with sock:
            for index, command in enumerate(commands):
                logger.info("Sending command %d/%d: %s", index + 1, total, command)
                try:
                    sock.sendall((command.rstrip() + "\n").encode("utf-8"))
                except OSError as exc:
                    raise ConsoleClosedError(
                        "Connection closed before all commands were sent "
                        f"({index}/{total} written): {exc}"
                    ) from exc
                self.log.push(command)

                remaining = total - index - 1
                wait = policy.delay_after(command, base) if remaining else self.linger
                if not self._collect_replies(sock, wait) and remaining:
                    raise ConsoleClosedError(
                        "Connection closed before all commands were sent "
                        f"({index + 1}/{total} written)"
                    )
        logger.debug("Console connection closed")

    def _collect_replies(self, sock: socket.socket, seconds: float) -> bool:
        """Log replies for *seconds*.  Returns False once the peer has hung up."""
        deadline = time.monotonic() + seconds
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return True
            sock.settimeout(remaining)
            try:
                data = sock.recv(4096)
            except socket.timeout:
                return True
            except OSError as exc:
                logger.debug("Console socket error: %s", exc)
                return False
            if not data:
                return False
            reply = data.decode("utf-8", errors="replace").strip()
            if reply:
                logger.debug("Console reply: %s", reply)

    def test_connection(self, timeout: float = 2.0) -> bool:
        """Return True if the console port accepts a TCP connection."""
        try:
            with socket.create_connection((self.host, self.port), timeout=timeout):
                return True
        except OSError:
            return False

    def wait_for_ready(self, max_retries: int = 10, interval: float = 1.0) -> None:
        """Poll :meth:`test_connection` until it succeeds.

        Raises
        ------
        ConsoleConnectionError
            If the port is still closed after *max_retries* attempts.
        """
        for attempt in range(1, max_retries + 1):
            if self.test_connection():
                logger.info("Console ready on port %d", self.port)
                return
            logger.info("Waiting for console port... (%d/%d)", attempt, max_retries)
            if attempt < max_retries:
                time.sleep(interval)
        raise ConsoleConnectionError(
            f"Console at {self.host}:{self.port} did not become ready after "
            f"{max_retries} attempts ({interval:g}s apart)"
        )
