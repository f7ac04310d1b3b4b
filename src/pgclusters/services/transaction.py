"""Ordered forward actions with compensating undo actions."""

from dataclasses import dataclass
from typing import Any, Callable, List, Optional


@dataclass
class Compensation:
    description: str
    undo: Callable[[], Any]


class Transaction:
    """Runs mutations in order and replays their undo actions in reverse on failure.

    Used as a context manager, an exception escaping the block rolls back
    everything registered so far unless :meth:`commit` was called.
    """

    def __init__(self, logger, enabled: bool = True):
        self.logger = logger
        self.enabled = enabled
        self.compensations: List[Compensation] = []
        self.committed = False
        self.rolled_back = False
        self.failed_undos: List[str] = []

    def __enter__(self) -> "Transaction":
        return self

    def __exit__(self, exc_type, exc, traceback) -> bool:
        if exc_type is not None and not self.committed:
            if self.enabled:
                self.logger.warning("Rolling back after failure: %s", exc)
                self.rollback()
            else:
                self.logger.warning("Rollback disabled; leaving partial state in place")
        return False

    def do(self, description: str, forward: Callable[[], Any], undo: Optional[Callable[[], Any]] = None):
        """Runs ``forward``; ``undo`` is registered only once ``forward`` succeeded."""
        self.logger.debug("Step: %s", description)
        result = forward()
        if undo is not None:
            self.compensations.append(Compensation(description, undo))
        return result

    def on_rollback(self, description: str, undo: Callable[[], Any]):
        self.compensations.append(Compensation(description, undo))

    def rollback(self) -> List[str]:
        """Replays the undo actions newest first; returns the descriptions that failed."""
        failed = []
        while self.compensations:
            compensation = self.compensations.pop()
            self.logger.debug("Undo: %s", compensation.description)
            try:
                compensation.undo()
            except Exception as exc:  # every remaining undo still has to run
                self.logger.warning("Could not undo '%s': %s", compensation.description, exc)
                failed.append(compensation.description)
        self.rolled_back = True
        self.failed_undos.extend(failed)
        return failed

    def commit(self):
        self.compensations.clear()
        self.committed = True
