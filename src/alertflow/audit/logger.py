"""Append-only audit sinks for alert lifecycle and delivery events.

``AuditLogger`` writes one JSON line per record plus:
- prev_hash: SHA-256 of the previous entry (or "0"*64 for the first)
- entry_hash: SHA-256 of this entry's content (computed before writing)

Any edit or deletion breaks the chain and is reported by verify_log().
``InMemoryAuditSink`` keeps records in a list (default when no log path
is configured, and in tests).
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from alertflow.models import AuditAction, AuditLevel, AuditRecord

GENESIS_HASH = "0" * 64

logger = logging.getLogger(__name__)


class AuditError(Exception):
    """Raised when the audit log encounters an error."""


@runtime_checkable
class AuditSink(Protocol):
    """Protocol for audit sinks. Records are appended, never rewritten."""

    def record(
        self,
        action_type: AuditAction,
        description: str,
        level: AuditLevel = AuditLevel.INFO,
        metadata: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> AuditRecord: ...


def _new_record(
    action_type: AuditAction,
    description: str,
    level: AuditLevel,
    metadata: dict[str, Any] | None,
    timestamp: datetime | None,
) -> AuditRecord:
    return AuditRecord(
        record_id=f"aud-{uuid.uuid4().hex[:12]}",
        timestamp=timestamp or datetime.now(tz=UTC),
        action_type=action_type,
        description=description,
        level=level,
        metadata=metadata or {},
    )


def safe_record(
    sink: AuditSink | None,
    action_type: AuditAction,
    description: str,
    level: AuditLevel = AuditLevel.INFO,
    metadata: dict[str, Any] | None = None,
) -> AuditRecord | None:
    """Write to *sink*, logging instead of raising when the write fails."""
    if sink is None:
        return None
    try:
        return sink.record(action_type, description, level, metadata)
    except Exception:
        logger.exception("Audit sink %s failed to record %s", type(sink).__name__, action_type)
        return None


class InMemoryAuditSink:
    """List-backed audit sink. Thread-safe via a lock on appends."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: list[AuditRecord] = []

    def record(
        self,
        action_type: AuditAction,
        description: str,
        level: AuditLevel = AuditLevel.INFO,
        metadata: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> AuditRecord:
        entry = _new_record(action_type, description, level, metadata, timestamp)
        with self._lock:
            self._records.append(entry)
        return entry

    @property
    def records(self) -> list[AuditRecord]:
        return list(self._records)

    def of_type(self, action_type: AuditAction) -> list[AuditRecord]:
        return [r for r in self._records if r.action_type == action_type]


class AuditLogger:
    """Append-only, hash-chained JSON-lines audit sink.

    Thread-safe via a lock on write operations.
    """

    def __init__(self, log_path: str | Path) -> None:
        self._path = Path(log_path)
        self._lock = threading.Lock()
        self._prev_hash = self._read_last_hash()

    def _read_last_hash(self) -> str:
        """Read the hash of the last entry, or return genesis hash."""
        if not self._path.exists() or self._path.stat().st_size == 0:
            return GENESIS_HASH

        last_line = ""
        with self._path.open("r", encoding="utf-8") as f:
            for line in f:
                stripped = line.strip()
                if stripped:
                    last_line = stripped

        if not last_line:
            return GENESIS_HASH

        try:
            entry = json.loads(last_line)
            return entry.get("entry_hash", GENESIS_HASH)
        except json.JSONDecodeError as exc:
            raise AuditError(
                f"Corrupt audit log, last line is not valid JSON: {self._path}"
            ) from exc

    @property
    def path(self) -> Path:
        return self._path

    @property
    def prev_hash(self) -> str:
        return self._prev_hash

    def record(
        self,
        action_type: AuditAction,
        description: str,
        level: AuditLevel = AuditLevel.INFO,
        metadata: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> AuditRecord:
        """Append one record and return it with computed hashes."""
        entry = _new_record(action_type, description, level, metadata, timestamp)

        with self._lock:
            entry.prev_hash = self._prev_hash
            hash_payload = entry.model_dump(mode="json", exclude={"entry_hash"})
            payload_bytes = json.dumps(hash_payload, sort_keys=True).encode("utf-8")
            entry.entry_hash = hashlib.sha256(payload_bytes).hexdigest()

            json_line = json.dumps(entry.model_dump(mode="json"), sort_keys=True)
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(json_line + "\n")
            self._prev_hash = entry.entry_hash

        return entry

    def read_records(self) -> list[AuditRecord]:
        """Read all records from the log file."""
        if not self._path.exists():
            return []

        records: list[AuditRecord] = []
        with self._path.open("r", encoding="utf-8") as f:
            for i, line in enumerate(f):
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    records.append(AuditRecord(**json.loads(stripped)))
                except Exception as e:
                    raise AuditError(
                        f"Corrupt entry at line {i + 1} in {self._path}: {e}"
                    ) from e

        return records


def verify_log(log_path: str | Path) -> tuple[bool, list[str]]:
    """Verify the integrity of a hash-chained audit log.

    Returns (is_valid, list_of_errors).
    An empty error list means the log is intact.
    """
    log_path = Path(log_path)
    if not log_path.exists():
        return True, []

    errors: list[str] = []
    prev_hash = GENESIS_HASH
    line_num = 0

    with log_path.open("r", encoding="utf-8") as f:
        for line in f:
            stripped = line.strip()
            if not stripped:
                continue
            line_num += 1

            try:
                data = json.loads(stripped)
            except json.JSONDecodeError as e:
                errors.append(f"Line {line_num}: invalid JSON: {e}")
                continue

            stored_prev = data.get("prev_hash", "")
            if stored_prev != prev_hash:
                errors.append(
                    f"Line {line_num}: chain broken: "
                    f"expected prev_hash {prev_hash[:16]}..., "
                    f"got {stored_prev[:16]}..."
                )

            stored_hash = data.get("entry_hash", "")
            verify_data = {k: v for k, v in data.items() if k != "entry_hash"}
            recomputed = hashlib.sha256(
                json.dumps(verify_data, sort_keys=True).encode("utf-8")
            ).hexdigest()

            if stored_hash != recomputed:
                errors.append(
                    f"Line {line_num}: hash mismatch: "
                    f"stored {stored_hash[:16]}..., "
                    f"computed {recomputed[:16]}..."
                )

            prev_hash = stored_hash

    return len(errors) == 0, errors
