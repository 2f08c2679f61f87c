# agentauth/audit.py
"""NDJSON audit trail: one entry per proxied or denied request."""
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, TextIO

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class AuditEntry(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    timestamp: str = Field(default_factory=_utc_timestamp)
    backend: str = "none"
    method: str
    path: str
    status: int | None = None
    duration_ms: int | None = Field(default=None, alias="durationMs")
    allowed: bool
    reason: str | None = None

    @classmethod
    def now(cls, **fields) -> "AuditEntry":
        """Entry stamped with the current UTC time."""
        return cls(timestamp=_utc_timestamp(), **fields)

    def to_json(self) -> str:
        """Serialise with wire field names; absent optional fields are omitted."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


class AuditSink(Protocol):
    def write(self, entry: AuditEntry) -> None: ...


class NullAuditLog:
    """Sink used when no audit log is configured."""

    def write(self, entry: AuditEntry) -> None:
        pass


class MemoryAuditLog:
    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []
        self._lock = threading.Lock()

    def write(self, entry: AuditEntry) -> None:
        with self._lock:
            self.entries.append(entry)


class JsonlAuditLog:
    """Append-only file sink.

    A single handle is shared by every request; the lock keeps each line
    whole when writes interleave.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._fh: TextIO | None = None
        self._lock = threading.Lock()

    def open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = self.path.open("a", encoding="utf-8")

    def write(self, entry: AuditEntry) -> None:
        line = entry.to_json() + "\n"
        with self._lock:
            if self._fh is None:
                return
            self._fh.write(line)
            self._fh.flush()

    def close(self) -> None:
        with self._lock:
            if self._fh is not None:
                self._fh.close()
                self._fh = None

    def read(self) -> list[AuditEntry]:
        """Read back every entry, for debugging and the ``logs`` command."""
        try:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []

        entries = []
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                entries.append(AuditEntry.model_validate_json(line))
            except ValidationError:
                logger.warning("Skipping malformed audit line %d in %s", lineno, self.path)
        return entries
