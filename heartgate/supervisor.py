"""Presence client: stay connected to the gateway and keep it fed with heartbeats."""
from __future__ import annotations

import asyncio
import contextlib
import enum
import errno
import logging
from dataclasses import dataclass
from time import monotonic
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

from heartgate.audit import AuditLogger
from heartgate.config import DEFAULT_PORT, HEARTBEAT
from heartgate.errors import FatalError

logger = logging.getLogger(__name__)

OpenConnection = Callable[..., Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]

# Local resource exhaustion; retrying cannot help.
FATAL_ERRNOS = frozenset({errno.EMFILE, errno.ENFILE, errno.ENOBUFS, errno.ENOMEM})


class AttemptState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass(slots=True)
class ConnectionAttempt:
    """One pass through connect, hold and close."""

    host: str
    port: Union[str, int]
    number: int
    state: AttemptState = AttemptState.IDLE
    reader: Optional[asyncio.StreamReader] = None
    writer: Optional[asyncio.StreamWriter] = None


class ConnectionSupervisor:
    """Keep one TCP connection to the gateway open for as long as the process lives.

    Failed or timed-out connects wait one interval and try again, forever. While
    connected, a heartbeat is written whenever an interval passes without
    inbound data; end-of-stream from the server drops back to a fresh attempt.
    """

    def __init__(
        self,
        host: str,
        port: Union[str, int] = DEFAULT_PORT,
        *,
        interval: float = 5.0,
        read_size: int = 100,
        heartbeat: bytes = HEARTBEAT,
        audit: Optional[AuditLogger] = None,
        open_connection: Optional[OpenConnection] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.interval = max(0.01, interval)
        self.read_size = read_size
        self.heartbeat = heartbeat
        self.audit = audit
        self._open_connection: OpenConnection = open_connection or asyncio.open_connection

        self._stop_event: Optional[asyncio.Event] = None
        self._stop_requested = False
        self._current: Optional[ConnectionAttempt] = None
        self.attempts = 0
        self.heartbeats_sent = 0

    @property
    def state(self) -> AttemptState:
        if self._current is None:
            return AttemptState.IDLE
        return self._current.state

    async def run(self, runtime: Optional[float] = None) -> None:
        """Supervise the connection until stopped or ``runtime`` elapses."""
        stop_event = asyncio.Event()
        if self._stop_requested:
            stop_event.set()
        self._stop_event = stop_event
        deadline = monotonic() + runtime if runtime else None

        logger.info("Supervising connection to %s:%s", self.host, self.port)
        try:
            while not stop_event.is_set() and not _expired(deadline):
                self.attempts += 1
                attempt = ConnectionAttempt(self.host, self.port, number=self.attempts)
                self._current = attempt

                await self._connect(attempt, deadline)
                if attempt.state is AttemptState.CONNECTED:
                    await self._connected_loop(attempt, deadline, stop_event)
                    await self._close(attempt)
                elif attempt.state is AttemptState.FAILED:
                    await self._sleep_with_stop(self.interval, stop_event, deadline)
                attempt.state = AttemptState.IDLE
        finally:
            if self._current is not None:
                await self._close(self._current)
                self._current.state = AttemptState.IDLE
            stop_event.set()
            self._stop_requested = False
            logger.info("Supervisor stopped after %d attempt(s)", self.attempts)

    def request_stop(self) -> None:
        self._stop_requested = True
        if self._stop_event:
            self._stop_event.set()
        attempt = self._current
        if attempt is not None and attempt.writer is not None:
            # Wakes a pending read with end-of-stream.
            attempt.writer.close()

    # ------------------------------------------------------------------
    # State machine steps
    # ------------------------------------------------------------------
    async def _connect(self, attempt: ConnectionAttempt, deadline: Optional[float]) -> None:
        attempt.state = AttemptState.CONNECTING
        logger.info("Connecting...")
        await self._log("connect_attempt", status="pending", extra={"attempt": attempt.number})
        try:
            reader, writer = await asyncio.wait_for(
                self._open_connection(attempt.host, attempt.port),
                timeout=_bounded(self.interval, deadline),
            )
        except asyncio.TimeoutError:
            logger.info("connect() timed out.")
            attempt.state = AttemptState.FAILED
            await self._log("connect_attempt", status="timeout", extra={"attempt": attempt.number})
            return
        except OSError as exc:
            if exc.errno in FATAL_ERRNOS:
                logger.error("socket: %s", exc)
                attempt.state = AttemptState.FAILED
                raise FatalError(f"cannot open a connection: {exc}") from exc
            logger.info("connect() error, retry: %s", exc)
            attempt.state = AttemptState.FAILED
            await self._log("connect_attempt", status="error", message=str(exc), extra={"attempt": attempt.number})
            return

        attempt.reader = reader
        attempt.writer = writer
        attempt.state = AttemptState.CONNECTED
        logger.info("Connected.")
        await self._log("connect_attempt", status="ok", extra={"attempt": attempt.number})

    async def _connected_loop(
        self,
        attempt: ConnectionAttempt,
        deadline: Optional[float],
        stop_event: asyncio.Event,
    ) -> None:
        reader, writer = attempt.reader, attempt.writer
        if reader is None or writer is None:
            return
        while not stop_event.is_set():
            if _expired(deadline):
                return
            try:
                data = await asyncio.wait_for(reader.read(self.read_size), timeout=_bounded(self.interval, deadline))
            except asyncio.TimeoutError:
                if _expired(deadline):
                    return
                if not await self._send_heartbeat(writer):
                    await self._log("session_lost", status="error", message="heartbeat write failed")
                    return
                continue
            except OSError as exc:
                logger.info("Connection error: %s", exc)
                await self._log("session_lost", status="error", message=str(exc))
                return

            if stop_event.is_set():
                return
            if not data:
                logger.info("Closing connection.")
                await self._log("session_lost", status="eof")
                return
            logger.debug("Data from server (%d bytes), ignored.", len(data))

    async def _send_heartbeat(self, writer: asyncio.StreamWriter) -> bool:
        logger.debug("Sending data to server")
        try:
            writer.write(self.heartbeat)
            await writer.drain()
        except OSError as exc:
            logger.info("Heartbeat failed: %s", exc)
            return False
        self.heartbeats_sent += 1
        return True

    async def _close(self, attempt: ConnectionAttempt) -> None:
        writer = attempt.writer
        attempt.reader = None
        attempt.writer = None
        if writer is None:
            return
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()

    async def _sleep_with_stop(
        self,
        duration: float,
        stop_event: asyncio.Event,
        deadline: Optional[float],
    ) -> None:
        wait_time = _bounded(duration, deadline)
        if wait_time <= 0:
            return
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
        except asyncio.TimeoutError:
            pass

    async def _log(
        self,
        event: str,
        *,
        status: Optional[str] = None,
        message: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self.audit:
            return
        try:
            await asyncio.to_thread(
                self.audit.log,
                event,
                status=status,
                address=f"{self.host}:{self.port}",
                message=message,
                extra=extra,
            )
        except OSError:
            logger.debug("Audit logging failed for %s", event, exc_info=True)


def _expired(deadline: Optional[float]) -> bool:
    return deadline is not None and monotonic() >= deadline


def _bounded(duration: float, deadline: Optional[float]) -> float:
    if deadline is None:
        return duration
    return max(0.0, min(duration, deadline - monotonic()))


__all__ = ["ConnectionSupervisor", "ConnectionAttempt", "AttemptState", "FATAL_ERRNOS"]
