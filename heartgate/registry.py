"""Connection registry owned by the gateway event loop."""
from __future__ import annotations

import logging
import selectors
import socket
from dataclasses import dataclass
from time import monotonic
from typing import Any, Callable, Dict, Iterator, List, Optional

from heartgate.audit import AuditLogger

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ClientRecord:
    """An admitted peer, keyed by the descriptor of its accepted socket."""

    handle: int
    address: str
    sock: socket.socket
    connected_at: float
    last_activity: float

    def idle_for(self, now: float) -> float:
        return now - self.last_activity


class ClientRegistry:
    """Mapping of open client handles to their records.

    The registry and the selector's watch-set change together: ``create``
    registers the socket, ``remove`` unregisters and closes it. Removal is
    idempotent so end-of-stream detection and the timeout sweep may both ask
    for the same handle within one iteration.
    """

    def __init__(
        self,
        selector: selectors.BaseSelector,
        hooks: Any,
        *,
        allow_hook: Optional[str] = None,
        revoke_hook: Optional[str] = None,
        clock: Callable[[], float] = monotonic,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self._selector = selector
        self._hooks = hooks
        self.allow_hook = allow_hook
        self.revoke_hook = revoke_hook
        self.clock = clock
        self.audit = audit
        self._records: Dict[int, ClientRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, handle: object) -> bool:
        return handle in self._records

    def __iter__(self) -> Iterator[ClientRecord]:
        return iter(list(self._records.values()))

    def get(self, handle: int) -> Optional[ClientRecord]:
        return self._records.get(handle)

    def handles(self) -> List[int]:
        return sorted(self._records)

    def create(self, sock: socket.socket, address: str) -> ClientRecord:
        handle = sock.fileno()
        now = self.clock()
        record = ClientRecord(handle=handle, address=address, sock=sock, connected_at=now, last_activity=now)
        self._selector.register(sock, selectors.EVENT_READ)
        self._records[handle] = record

        logger.info("New connection: %d (IP: %s)", handle, address)
        self._audit("admit", status="ok", address=address, extra={"handle": handle})
        self._hooks.invoke(self.allow_hook, address)
        return record

    def touch(self, handle: int) -> bool:
        record = self._records.get(handle)
        if record is None:
            return False
        record.last_activity = self.clock()
        return True

    def remove(self, handle: int, reason: str = "eof") -> bool:
        """Revoke, unwatch and close ``handle``; a no-op when it is unknown."""
        record = self._records.pop(handle, None)
        if record is None:
            return False

        logger.info("Connection lost: %d (IP: %s)", handle, record.address)
        self._hooks.invoke(self.revoke_hook, record.address)
        self._unwatch(record)
        self._audit(
            "evict",
            status=reason,
            address=record.address,
            extra={"handle": handle, "held": round(self.clock() - record.connected_at, 3)},
        )
        return True

    def abandon(self) -> int:
        """Close every client without running the revocation hook."""
        count = 0
        for handle in self.handles():
            record = self._records.pop(handle)
            self._unwatch(record)
            count += 1
        return count

    def _unwatch(self, record: ClientRecord) -> None:
        try:
            self._selector.unregister(record.sock)
        except (KeyError, ValueError):
            logger.debug("Handle %d was not watched", record.handle)
        record.sock.close()

    def _audit(self, event: str, **payload: Any) -> None:
        if not self.audit:
            return
        try:
            self.audit.log(event, **payload)
        except OSError:
            logger.debug("Audit logging failed for %s", event, exc_info=True)


__all__ = ["ClientRecord", "ClientRegistry"]
