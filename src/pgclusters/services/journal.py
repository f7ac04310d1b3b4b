"""Upgrade journal written next to the upgrade logs."""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pgclusters.errors import FilesystemError


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass
class StateEntry:
    """One pass through an upgrade state."""

    state: str
    outcome: str = "running"
    entered_at: str = field(default_factory=_timestamp)
    left_at: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class UpgradeJournal:
    """Mirrors one :class:`UpgradeSession` into ``session.json`` after every state change.

    The file tells an operator which state an interrupted upgrade reached,
    which temporary port the new cluster held and whether the rollback ran.
    Writing it never fails the upgrade; problems are logged as warnings.
    """

    def __init__(self, session, path: str, filesystem_service, logger):
        self.session = session
        self.path = path
        self.filesystem = filesystem_service
        self.logger = logger
        self.entries: List[StateEntry] = []
        self.status = "running"
        self.rollback: Optional[Dict[str, Any]] = None
        self.error: Optional[str] = None

    @property
    def current(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None

    def enter(self, state):
        self.entries.append(StateEntry(state=state.value))
        self.write()

    def leave(self, state, details: Optional[Dict[str, Any]] = None):
        entry = self._open_entry(state)
        entry.outcome = "done"
        entry.left_at = _timestamp()
        entry.details.update(details or {})
        self.write()

    def fail(self, state, error: str):
        entry = self._open_entry(state)
        entry.outcome = "failed"
        entry.left_at = _timestamp()
        entry.error = error
        self.write()

    def abort(self, state, error: str, performed: bool, failed_undos: List[str]):
        """Records the failure of the whole upgrade and what the rollback did about it."""
        self.status = "failed"
        self.error = error
        self.rollback = {"performed": performed, "failed_undos": list(failed_undos)}
        if performed:
            self.entries.append(
                StateEntry(
                    state=state.value,
                    outcome="failed" if failed_undos else "done",
                    left_at=_timestamp(),
                    details={"failed_undos": list(failed_undos)},
                )
            )
        self.write()

    def succeed(self, state):
        self.status = "success"
        self.entries.append(StateEntry(state=state.value, outcome="done", left_at=_timestamp()))
        self.write()

    def _open_entry(self, state) -> StateEntry:
        for entry in reversed(self.entries):
            if entry.state == state.value and entry.outcome == "running":
                return entry
        entry = StateEntry(state=state.value)
        self.entries.append(entry)
        return entry

    def as_dict(self) -> Dict[str, Any]:
        session = self.session
        return {
            "status": self.status,
            "source": session.source.key,
            "target": f"{session.new_version}/{session.new_name}",
            "method": session.method,
            "temp_port": session.temp_port,
            "source_was_running": session.source_was_running,
            "ports_swapped": session.ports_swapped,
            "state": self.current.state if self.current else None,
            "states": [asdict(entry) for entry in self.entries],
            "rollback": self.rollback,
            "error": self.error,
        }

    def write(self):
        content = json.dumps(self.as_dict(), indent=2, sort_keys=True) + "\n"
        try:
            self.filesystem.atomic_write(self.path, content, mode=0o640)
        except FilesystemError as exc:
            self.logger.warning("Could not write upgrade journal '%s': %s", self.path, exc)
