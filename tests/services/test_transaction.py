import pytest

from pgclusters.errors import ClusterError
from pgclusters.services.transaction import Transaction


class DummyLogger:
    def __init__(self):
        self.warnings = []

    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, message, *args, **_kwargs):
        self.warnings.append(message % args if args else message)


def test_failure_replays_undo_actions_newest_first():
    events = []

    with pytest.raises(ClusterError, match="step three"):
        with Transaction(DummyLogger()) as tx:
            tx.do("one", lambda: events.append("do one"), lambda: events.append("undo one"))
            tx.on_rollback("two", lambda: events.append("undo two"))
            tx.do("three", _fail, lambda: events.append("undo three"))

    assert events == ["do one", "undo two", "undo one"]
    assert tx.rolled_back is True


def test_commit_keeps_changes():
    events = []

    with Transaction(DummyLogger()) as tx:
        result = tx.do("one", lambda: "value", lambda: events.append("undo one"))
        tx.commit()

    assert result == "value"
    assert events == []
    assert tx.compensations == []


def test_failing_undo_does_not_stop_rollback():
    events = []
    logger = DummyLogger()
    tx = Transaction(logger)
    tx.on_rollback("first", lambda: events.append("first"))
    tx.on_rollback("broken", _fail)

    failed = tx.rollback()

    assert failed == ["broken"]
    assert events == ["first"]
    assert any("Could not undo 'broken'" in warning for warning in logger.warnings)


def test_disabled_transaction_leaves_state_in_place():
    events = []
    logger = DummyLogger()

    with pytest.raises(ClusterError):
        with Transaction(logger, enabled=False) as tx:
            tx.do("one", lambda: None, lambda: events.append("undo one"))
            _fail()

    assert events == []
    assert tx.rolled_back is False
    assert "Rollback disabled; leaving partial state in place" in logger.warnings


def _fail():
    raise ClusterError("step three failed")
