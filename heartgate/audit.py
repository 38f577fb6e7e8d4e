"""CSV ledger of admissions, evictions and hook runs."""
from __future__ import annotations

import csv
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence


AUDIT_FIELDS: Sequence[str] = (
    "timestamp",
    "event",
    "status",
    "address",
    "message",
    "extra",
)


def _normalize_extra(extra: Mapping[str, Any]) -> str:
    if not extra:
        return ""
    try:
        return json.dumps(extra, separators=(",", ":"), ensure_ascii=True, sort_keys=True)
    except (TypeError, ValueError):
        return repr(extra)


@dataclass(slots=True)
class AuditRecord:
    """One ledger row."""

    timestamp: str
    event: str
    status: Optional[str] = None
    address: Optional[str] = None
    message: Optional[str] = None
    extra: str = ""

    def as_row(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "event": self.event,
            "status": self.status or "",
            "address": self.address or "",
            "message": self.message or "",
            "extra": self.extra,
        }


class AuditLogger:
    """Append-only CSV ledger shared by the event loop and the hook reaper.

    Rows are written synchronously and flushed under a lock, so the reaper
    thread and the loop thread may both record events without interleaving.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._ensure_header()

    def _ensure_header(self) -> None:
        if self.path.exists() and self.path.stat().st_size > 0:
            return
        with self._lock:
            with self.path.open("w", newline="", encoding="utf-8") as handle:
                writer = csv.DictWriter(handle, fieldnames=AUDIT_FIELDS)
                writer.writeheader()
                handle.flush()

    def log(
        self,
        event: str,
        *,
        status: Optional[str] = None,
        address: Optional[str] = None,
        message: Optional[str] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        record = AuditRecord(
            timestamp=self._timestamp(),
            event=event,
            status=status,
            address=address,
            message=message,
            extra=_normalize_extra(extra or {}),
        )
        self._write_row(record)

    def _write_row(self, record: AuditRecord) -> None:
        with self._lock:
            with self.path.open("a", newline="", encoding="utf-8") as handle:
                writer = csv.DictWriter(handle, fieldnames=AUDIT_FIELDS)
                writer.writerow(record.as_row())
                handle.flush()

    def _timestamp(self) -> str:
        return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def read_audit(path: str | Path) -> List[Dict[str, str]]:
    with Path(path).open("r", encoding="utf-8", newline="") as handle:
        return list(csv.DictReader(handle))


def summarize(rows: Iterable[Mapping[str, str]]) -> List[Dict[str, Any]]:
    """Aggregate gateway rows per peer address, ordered by address."""
    summary: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        address = row.get("address") or ""
        if not address:
            continue
        entry = summary.setdefault(
            address,
            {"address": address, "admissions": 0, "evictions": 0, "hook_failures": 0, "last_event": "", "last_seen": ""},
        )
        event = row.get("event", "")
        if event == "admit":
            entry["admissions"] += 1
        elif event == "evict":
            entry["evictions"] += 1
        elif event == "hook_spawn" and row.get("status") == "error":
            entry["hook_failures"] += 1
        entry["last_event"] = f"{event}:{row.get('status', '')}".rstrip(":")
        entry["last_seen"] = row.get("timestamp", "")
    return [summary[key] for key in sorted(summary)]


__all__ = [
    "AuditLogger",
    "AuditRecord",
    "AUDIT_FIELDS",
    "read_audit",
    "summarize",
]
