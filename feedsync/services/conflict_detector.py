"""
Conflict detection between local and remote read/starred state.

The remote API exposes no change timestamps for read/starred, so we can
only tell IF the two sides disagree, not WHEN either side changed. A
disagreement counts as a conflict only when the local row carries a local
mutation timestamp; by default the remote wins, since local intent that
still disagrees after a sync round-trip is assumed superseded.

Detected conflicts are kept for the session and appended to a JSON Lines
audit log on write_log().
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Literal, Mapping, Optional, Protocol

from pydantic import BaseModel

from feedsync.services.clock import Clock, to_utc_naive

logger = logging.getLogger(__name__)

ConflictType = Literal["read_status", "starred_status", "both"]
Resolution = Literal["local", "remote"]

# More conflicts than this in one session gets a warning in the report
HIGH_CONFLICT_THRESHOLD = 10


class FlagState(BaseModel):
    read: bool
    starred: bool


class ConflictLogEntry(BaseModel):
    """One audit record; never mutated after creation."""
    timestamp: str
    sync_session_id: str
    entity_id: str
    feed_id: Optional[str] = None
    remote_id: str
    conflict_type: ConflictType
    local_value: FlagState
    remote_value: FlagState
    resolution: Resolution
    last_local_update: Optional[str] = None
    last_remote_known_update: Optional[str] = None
    note: str


@dataclass
class ConflictSummary:
    total: int = 0
    read_status: int = 0
    starred_status: int = 0
    both: int = 0
    resolutions: dict[str, int] = field(default_factory=lambda: {"local": 0, "remote": 0})

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "read_status": self.read_status,
            "starred_status": self.starred_status,
            "both": self.both,
            "resolutions": dict(self.resolutions),
        }


class ConflictLogSink(Protocol):
    def append(self, lines: list[str]) -> None: ...


class JsonlConflictSink:
    """Append-only JSON Lines file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def append(self, lines: list[str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            for line in lines:
                f.write(line + "\n")


def states_differ(local: Mapping[str, Any], remote: Mapping[str, Any]) -> bool:
    """True when the read flag or the starred flag disagrees."""
    return (
        bool(local.get("is_read")) != bool(remote.get("is_read"))
        or bool(local.get("is_starred")) != bool(remote.get("is_starred"))
    )


def has_local_changes(entity: Mapping[str, Any]) -> bool:
    """
    True when the entity was changed locally after it was last synced.

    Missing either timestamp means there is nothing to compare.
    """
    local = to_utc_naive(entity.get("last_local_update"))
    synced = to_utc_naive(entity.get("last_sync_update"))
    if local is None or synced is None:
        return False
    return local > synced


def classify(local: Mapping[str, Any], remote: Mapping[str, Any]) -> ConflictType:
    read_differs = bool(local.get("is_read")) != bool(remote.get("is_read"))
    starred_differs = bool(local.get("is_starred")) != bool(remote.get("is_starred"))

    if read_differs and starred_differs:
        return "both"
    if read_differs:
        return "read_status"
    return "starred_status"


class ConflictDetector:
    """Collects conflicts for one sync session."""

    def __init__(
        self,
        session_id: str | None = None,
        sink: ConflictLogSink | None = None,
        clock: Clock | None = None,
    ):
        self.clock = clock or Clock()
        self.session_id = session_id or f"sync_{self.clock.now().isoformat()}"
        self.sink = sink
        self._conflicts: list[ConflictLogEntry] = []
        self._summary = ConflictSummary()
        self._written = 0

    @property
    def conflicts(self) -> list[ConflictLogEntry]:
        return list(self._conflicts)

    def states_differ(self, local: Mapping[str, Any], remote: Mapping[str, Any]) -> bool:
        return states_differ(local, remote)

    def has_local_changes(self, entity: Mapping[str, Any]) -> bool:
        return has_local_changes(entity)

    def detect_conflict(
        self,
        local: Mapping[str, Any],
        remote: Mapping[str, Any],
        resolution: Resolution = "remote",
    ) -> Optional[ConflictLogEntry]:
        """
        Compare one local entity with its remote record.

        Returns None when the states agree, or when the local side has no
        local mutation timestamp (the remote state is simply adopted).
        """
        if not states_differ(local, remote):
            return None

        if not local.get("last_local_update"):
            return None

        conflict_type = classify(local, remote)
        remote_id = str(local.get("remote_id") or remote.get("remote_id"))

        entry = ConflictLogEntry(
            timestamp=self.clock.now().isoformat() + "Z",
            sync_session_id=self.session_id,
            entity_id=str(local.get("id") or remote_id),
            feed_id=local.get("feed_id"),
            remote_id=remote_id,
            conflict_type=conflict_type,
            local_value=FlagState(
                read=bool(local.get("is_read")),
                starred=bool(local.get("is_starred")),
            ),
            remote_value=FlagState(
                read=bool(remote.get("is_read")),
                starred=bool(remote.get("is_starred")),
            ),
            resolution=resolution,
            last_local_update=_iso(local.get("last_local_update")),
            last_remote_known_update=_iso(local.get("last_sync_update")),
            note=(
                "Remote wins: local changes overwritten (remote exposes no change timestamps)"
                if resolution == "remote"
                else "Local wins: local changes preserved"
            ),
        )

        self._record(entry)
        return entry

    def process_batch(
        self,
        local_index: Mapping[str, Mapping[str, Any]],
        remote_records: Iterable[Mapping[str, Any]],
    ) -> list[ConflictLogEntry]:
        """Run detect_conflict for every remote record that exists locally."""
        found = []
        for remote in remote_records:
            local = local_index.get(remote.get("remote_id"))
            if local is None:
                continue
            conflict = self.detect_conflict(local, remote)
            if conflict:
                found.append(conflict)
        return found

    def write_log(self) -> int:
        """
        Append this session's unwritten conflicts to the sink.

        Best effort: failures are logged, never raised. Returns the number
        of entries written.
        """
        pending = self._conflicts[self._written:]
        if not pending or self.sink is None:
            return 0

        try:
            self.sink.append([entry.model_dump_json() for entry in pending])
        except Exception as e:
            logger.error("Failed to write conflict log: %s", e)
            return 0

        self._written = len(self._conflicts)
        logger.info("Wrote %d conflicts to log", len(pending))
        return len(pending)

    def summary(self) -> ConflictSummary:
        summary = self._summary
        return ConflictSummary(
            total=summary.total,
            read_status=summary.read_status,
            starred_status=summary.starred_status,
            both=summary.both,
            resolutions=dict(summary.resolutions),
        )

    def report(self) -> str:
        """Human-readable summary of the session."""
        s = self._summary
        lines = [
            "=== Sync Conflict Report ===",
            f"Session ID: {self.session_id}",
            f"Timestamp: {self.clock.now().isoformat()}Z",
            "",
            f"Total Conflicts: {s.total}",
            f"  - Read Status: {s.read_status}",
            f"  - Starred Status: {s.starred_status}",
            f"  - Both: {s.both}",
            "",
            "Resolutions:",
            f"  - Local Wins: {s.resolutions['local']}",
            f"  - Remote Wins: {s.resolutions['remote']}",
            "",
            "Note: the remote service does not expose change timestamps for",
            "read/starred state, so conflicts are detected by state comparison only.",
        ]

        if s.total > HIGH_CONFLICT_THRESHOLD:
            lines.append("")
            lines.append("WARNING: High conflict rate detected. Consider more frequent syncs.")

        return "\n".join(lines)

    def clear(self) -> None:
        self._conflicts = []
        self._summary = ConflictSummary()
        self._written = 0

    def _record(self, entry: ConflictLogEntry) -> None:
        self._conflicts.append(entry)
        self._summary.total += 1
        if entry.conflict_type == "read_status":
            self._summary.read_status += 1
        elif entry.conflict_type == "starred_status":
            self._summary.starred_status += 1
        else:
            self._summary.both += 1
        self._summary.resolutions[entry.resolution] += 1


def _iso(value) -> Optional[str]:
    value = to_utc_naive(value)
    return value.isoformat() + "Z" if value else None
