"""Single-threaded gateway loop: accept, read, sweep."""
from __future__ import annotations

import logging
import selectors
import signal
import socket
from time import monotonic
from typing import Callable, Optional, Tuple

from heartgate.audit import AuditLogger
from heartgate.config import ServerConfig
from heartgate.errors import FatalError
from heartgate.hooks import PolicyHookRunner
from heartgate.registry import ClientRegistry
from heartgate.sweeper import TimeoutSweeper

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE = 2.0


def open_listener(host: Optional[str], port: str, backlog: int) -> socket.socket:
    """Bind the first usable passive address for ``host``/``port`` and listen."""
    try:
        candidates = socket.getaddrinfo(host, port, socket.AF_UNSPEC, socket.SOCK_STREAM, 0, socket.AI_PASSIVE)
    except socket.gaierror as exc:
        raise FatalError(f"getaddrinfo: {exc}") from exc

    listener: Optional[socket.socket] = None
    last_error: Optional[OSError] = None
    for family, socktype, proto, _canonname, sockaddr in candidates:
        try:
            sock = socket.socket(family, socktype, proto)
        except OSError as exc:
            logger.debug("socket: %s", exc)
            last_error = exc
            continue
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(sockaddr)
        except OSError as exc:
            sock.close()
            logger.debug("bind %s: %s", sockaddr, exc)
            last_error = exc
            continue
        listener = sock
        break

    if listener is None:
        raise FatalError(f"bind: {last_error}")

    try:
        listener.listen(backlog)
    except OSError as exc:
        listener.close()
        raise FatalError(f"listen: {exc}") from exc
    listener.setblocking(False)
    return listener


def peer_address(sockaddr) -> str:
    """Numeric host of an accepted peer, e.g. ``192.0.2.7``."""
    host, _service = socket.getnameinfo(sockaddr, socket.NI_NUMERICHOST | socket.NI_NUMERICSERV)
    return host


class EventLoop:
    """Multiplex the listener and every admitted client on one thread.

    Each iteration waits at most ``poll_interval`` seconds, handles ready
    descriptors in ascending order and then sweeps idle clients. All registry
    mutation happens here; hooks run in child processes reaped elsewhere.
    """

    def __init__(
        self,
        config: ServerConfig,
        *,
        hooks: Optional[PolicyHookRunner] = None,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], float] = monotonic,
        selector: Optional[selectors.BaseSelector] = None,
    ) -> None:
        self.config = config
        self.clock = clock
        self.audit = audit
        self.hooks = hooks if hooks is not None else PolicyHookRunner(audit=audit)
        self._selector = selector or selectors.DefaultSelector()
        self.registry = ClientRegistry(
            self._selector,
            self.hooks,
            allow_hook=config.allow_hook,
            revoke_hook=config.revoke_hook,
            clock=clock,
            audit=audit,
        )
        self.sweeper = TimeoutSweeper(self.registry, config.drop_after, clock=clock)
        self._listener: Optional[socket.socket] = None
        self._stop_reason: Optional[str] = None

    @property
    def address(self) -> Tuple:
        if self._listener is None:
            raise RuntimeError("EventLoop has not been started")
        return self._listener.getsockname()

    def watched(self) -> set:
        """Descriptors currently in the watch-set, listener included."""
        return set(self._selector.get_map())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        self._listener = open_listener(self.config.host, self.config.port, self.config.backlog)
        self._selector.register(self._listener, selectors.EVENT_READ)
        logger.info("Started.")

    def serve_forever(self) -> None:
        if self._listener is None:
            self.start()
        try:
            while self._stop_reason is None:
                self.run_once()
            logger.info("Got %s, shutting down.", self._stop_reason)
        finally:
            self.shutdown()

    def request_stop(self, reason: str = "SIGTERM") -> None:
        self._stop_reason = reason

    def install_signal_handlers(self) -> None:
        def _handler(signum, _frame) -> None:
            self.request_stop(signal.Signals(signum).name)

        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, _handler)

    def shutdown(self) -> None:
        if self.config.revoke_on_shutdown:
            for handle in self.registry.handles():
                self.registry.remove(handle, reason="shutdown")
        else:
            abandoned = self.registry.abandon()
            if abandoned:
                logger.debug("Left %d client(s) without revoking access", abandoned)

        if self._listener is not None:
            try:
                self._selector.unregister(self._listener)
            except (KeyError, ValueError):
                pass
            self._listener.close()
            self._listener = None
        self._selector.close()
        self.hooks.close(SHUTDOWN_GRACE)

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------
    def run_once(self, timeout: Optional[float] = None) -> int:
        """Run one wait/dispatch/sweep pass and return the ready count."""
        wait = self.config.poll_interval if timeout is None else timeout
        try:
            events = self._selector.select(wait)
        except InterruptedError:
            return 0
        except OSError as exc:
            logger.error("select: %s", exc)
            raise FatalError(f"select: {exc}") from exc

        for key, _mask in sorted(events, key=lambda event: event[0].fd):
            if key.fileobj is self._listener:
                self._accept()
            else:
                self._receive(key.fd)

        self.sweeper.sweep()
        return len(events)

    def _accept(self) -> None:
        if self._listener is None:
            return
        try:
            conn, sockaddr = self._listener.accept()
        except BlockingIOError:
            return
        except OSError as exc:
            logger.error("accept: %s", exc)
            return

        conn.setblocking(False)
        try:
            address = peer_address(sockaddr)
        except OSError as exc:
            logger.error("getnameinfo: %s", exc)
            conn.close()
            return
        try:
            self.registry.create(conn, address)
        except MemoryError as exc:
            logger.error("Out of memory while admitting connection %d", conn.fileno())
            conn.close()
            raise FatalError("out of memory") from exc

    def _receive(self, handle: int) -> None:
        record = self.registry.get(handle)
        if record is None:
            return
        try:
            data = record.sock.recv(self.config.read_size)
        except BlockingIOError:
            return
        except OSError as exc:
            logger.error("recv: %s", exc)
            self.registry.remove(handle, reason="error")
            return

        if not data:
            self.registry.remove(handle, reason="eof")
            return
        logger.debug("Connection timer reset: %d", handle)
        self.registry.touch(handle)


__all__ = ["EventLoop", "open_listener", "peer_address"]
