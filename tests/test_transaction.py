import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from cafe import models
from cafe.db import run_in_transaction


class FakeSession:
    def __init__(self, rollback_error=None):
        self.events = []
        self.rollback_error = rollback_error

    def commit(self):
        self.events.append("commit")

    def rollback(self):
        self.events.append("rollback")
        if self.rollback_error:
            raise self.rollback_error

    def close(self):
        self.events.append("close")


def test_commit_then_close():
    session = FakeSession()
    assert run_in_transaction(lambda s: 42, lambda: session) == 42
    assert session.events == ["commit", "close"]


def test_error_rolls_back_and_reraises():
    session = FakeSession()

    def work(s):
        raise KeyError("boom")

    with pytest.raises(KeyError):
        run_in_transaction(work, lambda: session)
    assert session.events == ["rollback", "close"]


def test_rollback_failure_keeps_original_error():
    session = FakeSession(rollback_error=SQLAlchemyError("connection lost"))

    def work(s):
        raise ValueError("original")

    with pytest.raises(ValueError, match="original"):
        run_in_transaction(work, lambda: session)
    assert session.events == ["rollback", "close"]


def test_partial_work_is_not_persisted(session_factory):
    def work(s):
        s.add(models.Category(name="Pastries"))
        s.flush()
        raise RuntimeError("after insert")

    with pytest.raises(RuntimeError):
        run_in_transaction(work, session_factory)
    with session_factory() as s:
        assert s.execute(select(func.count(models.Category.id))).scalar_one() == 0
