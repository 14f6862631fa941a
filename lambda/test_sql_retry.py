from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, ProgrammingError

import roast_storage


class FakeEngine:
    def __init__(self):
        self.disposed = False

    @contextmanager
    def begin(self):
        yield self

    def dispose(self):
        self.disposed = True


def engine_factory(engines):
    def _factory():
        engine = FakeEngine()
        engines.append(engine)
        return engine

    return _factory


def fake_work_factory(events):
    events = list(events)

    def _work(conn):
        outcome = events.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return _work


def operational(msg="lost connection"):
    return OperationalError("SELECT 1", {}, Exception(msg))


ORIGINAL_SLEEP = roast_storage.sleep_for


def test_retry_after_connection_drop():
    sleeps = []
    engines = []
    roast_storage.sleep_for = lambda s: sleeps.append(s)
    try:
        connection = roast_storage.SQLConnection(engine_factory(engines), max_attempts=3)
        result = connection.run(fake_work_factory([operational(), "ok"]))
        assert result == "ok"
        assert len(sleeps) == 1 and sleeps[0] >= 2
        assert len(engines) == 2 and engines[0].disposed and not engines[1].disposed
    finally:
        roast_storage.sleep_for = ORIGINAL_SLEEP


def test_interface_error_is_retried():
    roast_storage.sleep_for = lambda s: None
    try:
        connection = roast_storage.SQLConnection(engine_factory([]), max_attempts=2)
        error = InterfaceError("SELECT 1", {}, Exception("socket closed"))
        assert connection.run(fake_work_factory([error, 42])) == 42
    finally:
        roast_storage.sleep_for = ORIGINAL_SLEEP


def test_gives_up_after_max_attempts():
    sleeps = []
    engines = []
    roast_storage.sleep_for = lambda s: sleeps.append(s)
    try:
        connection = roast_storage.SQLConnection(engine_factory(engines), max_attempts=3)
        try:
            connection.run(fake_work_factory([operational("first"), operational("second"), operational("third")]))
            assert False, "Expected OperationalError after final attempt"
        except OperationalError as exc:
            assert str(exc.orig) == "third"
        assert len(sleeps) == 2
        assert len(engines) == 3
    finally:
        roast_storage.sleep_for = ORIGINAL_SLEEP


def test_no_retry_on_integrity_error():
    sleeps = []
    roast_storage.sleep_for = lambda s: sleeps.append(s)
    try:
        connection = roast_storage.SQLConnection(engine_factory([]), max_attempts=3)
        error = IntegrityError("INSERT", {}, Exception("duplicate key"))
        try:
            connection.run(fake_work_factory([error, "never"]))
            assert False, "Expected IntegrityError"
        except IntegrityError:
            pass
        assert sleeps == []
    finally:
        roast_storage.sleep_for = ORIGINAL_SLEEP


def test_no_retry_on_programming_error():
    roast_storage.sleep_for = lambda s: None
    engines = []
    try:
        connection = roast_storage.SQLConnection(engine_factory(engines), max_attempts=3)
        error = ProgrammingError("SELEC 1", {}, Exception("syntax error"))
        try:
            connection.run(fake_work_factory([error]))
            assert False, "Expected ProgrammingError"
        except ProgrammingError:
            pass
        assert len(engines) == 1 and not engines[0].disposed
    finally:
        roast_storage.sleep_for = ORIGINAL_SLEEP


def test_attempts_never_below_one():
    roast_storage.sleep_for = lambda s: None
    try:
        connection = roast_storage.SQLConnection(engine_factory([]), max_attempts=-4)
        assert connection.max_attempts == 1
        assert connection.run(fake_work_factory(["ok"])) == "ok"
    finally:
        roast_storage.sleep_for = ORIGINAL_SLEEP


def test_engine_reused_between_calls():
    engines = []
    connection = roast_storage.SQLConnection(engine_factory(engines), max_attempts=1)
    connection.run(fake_work_factory([1]))
    connection.run(fake_work_factory([2]))
    assert len(engines) == 1


if __name__ == "__main__":
    test_retry_after_connection_drop()
    test_interface_error_is_retried()
    test_gives_up_after_max_attempts()
    test_no_retry_on_integrity_error()
    test_no_retry_on_programming_error()
    test_attempts_never_below_one()
    test_engine_reused_between_calls()
    print("sql_retry tests passed")
