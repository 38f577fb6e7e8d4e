"""Eviction of clients that stopped sending heartbeats."""
from __future__ import annotations

import logging
from typing import Callable, List, Optional

from heartgate.registry import ClientRecord, ClientRegistry

logger = logging.getLogger(__name__)


class TimeoutSweeper:
    """Remove every record silent for longer than ``drop_after`` seconds.

    Runs once per loop iteration whether or not any socket was ready, so a
    silent client is dropped at most one wait interval after its deadline.
    """

    def __init__(
        self,
        registry: ClientRegistry,
        drop_after: float,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.registry = registry
        self.drop_after = drop_after
        self.clock = clock or registry.clock

    def expired(self, now: Optional[float] = None) -> List[ClientRecord]:
        now = self.clock() if now is None else now
        return [record for record in self.registry if record.idle_for(now) > self.drop_after]

    def sweep(self) -> List[int]:
        dropped: List[int] = []
        for record in self.expired():
            logger.info("Client timeout, dropping connection %d (IP: %s).", record.handle, record.address)
            if self.registry.remove(record.handle, reason="timeout"):
                dropped.append(record.handle)
        return dropped


__all__ = ["TimeoutSweeper"]
