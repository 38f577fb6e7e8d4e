"""Fire-and-forget execution of the admission and revocation hooks."""
from __future__ import annotations

import logging
import queue
import subprocess
import threading
from dataclasses import dataclass
from time import monotonic
from typing import Any, Callable, Dict, List, Optional

from heartgate.audit import AuditLogger

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HookProcess:
    """A spawned hook awaiting collection by the reaper."""

    hook: str
    address: str
    process: Any
    started: float

    @property
    def pid(self) -> int:
        return self.process.pid


class PolicyHookRunner:
    """Spawn ``<hook> <address>`` without waiting for it to finish.

    Children are collected by one daemon reaper thread which only touches its
    own bookkeeping and the audit ledger, never the client registry. Launch
    failures are logged and swallowed so the event loop keeps running.
    """

    def __init__(
        self,
        *,
        audit: Optional[AuditLogger] = None,
        poll_interval: float = 0.2,
        popen: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.audit = audit
        self.poll_interval = max(0.01, poll_interval)
        self._popen = popen or subprocess.Popen
        self._queue: "queue.Queue[HookProcess]" = queue.Queue()
        self._cond = threading.Condition()
        self._live = 0
        self._stop = threading.Event()
        self._reaper: Optional[threading.Thread] = None

    @property
    def pending(self) -> int:
        """Number of spawned hooks not yet reaped."""
        with self._cond:
            return self._live

    def invoke(self, hook_path: Optional[str], address: str) -> Optional[HookProcess]:
        if not hook_path:
            logger.debug("No hook configured, skipping for %s", address)
            return None

        logger.debug("Executing '%s \"%s\"'...", hook_path, address)
        try:
            process = self._popen(
                [hook_path, address],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                close_fds=True,
                start_new_session=True,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as exc:
            logger.error("Cannot execute %s for %s: %s", hook_path, address, exc)
            self._audit("hook_spawn", status="error", address=address, message=str(exc), extra={"hook": hook_path})
            return None

        handle = HookProcess(hook=hook_path, address=address, process=process, started=monotonic())
        with self._cond:
            self._live += 1
        self._ensure_reaper()
        self._audit("hook_spawn", status="ok", address=address, extra={"hook": hook_path, "pid": handle.pid})
        self._queue.put(handle)
        return handle

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every spawned hook has been reaped; False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._live == 0, timeout=timeout)

    def close(self, timeout: Optional[float] = None) -> None:
        """Give outstanding hooks up to ``timeout`` seconds, then stop the reaper."""
        if timeout:
            self.wait_idle(timeout)
        self._stop.set()
        reaper = self._reaper
        if reaper is not None:
            reaper.join(timeout)

    # ------------------------------------------------------------------
    # Reaper thread
    # ------------------------------------------------------------------
    def _ensure_reaper(self) -> None:
        if self._reaper is not None and self._reaper.is_alive():
            return
        self._stop.clear()
        self._reaper = threading.Thread(target=self._reap_loop, name="heartgate-reaper", daemon=True)
        self._reaper.start()

    def _reap_loop(self) -> None:
        outstanding: List[HookProcess] = []
        while True:
            try:
                outstanding.append(self._queue.get(timeout=self.poll_interval))
                while True:
                    outstanding.append(self._queue.get_nowait())
            except queue.Empty:
                pass

            running: List[HookProcess] = []
            for handle in outstanding:
                code = handle.process.poll()
                if code is None:
                    running.append(handle)
                else:
                    self._collected(handle, code)
            outstanding = running

            if self._stop.is_set() and not outstanding and self._queue.empty():
                return

    def _collected(self, handle: HookProcess, code: int) -> None:
        duration = monotonic() - handle.started
        logger.debug(
            "Reaped hook %s (IP: %s), pid %d exited with %d after %.2fs",
            handle.hook,
            handle.address,
            handle.pid,
            code,
            duration,
        )
        self._audit(
            "hook_exit",
            status=str(code),
            address=handle.address,
            extra={"hook": handle.hook, "pid": handle.pid, "duration": round(duration, 3)},
        )
        with self._cond:
            self._live -= 1
            self._cond.notify_all()

    def _audit(
        self,
        event: str,
        *,
        status: Optional[str] = None,
        address: Optional[str] = None,
        message: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self.audit:
            return
        try:
            self.audit.log(event, status=status, address=address, message=message, extra=extra)
        except OSError:
            logger.debug("Audit logging failed for %s", event, exc_info=True)


__all__ = ["PolicyHookRunner", "HookProcess"]
