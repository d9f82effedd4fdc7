# tests/test_retry.py
import threading

import pytest
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from mapcrawl.errors import (
    NoItemsFound,
    RetriesExhausted,
    SessionLost,
    TransientNavigation,
    is_session_lost,
)
from mapcrawl.retry import RetryPolicy, RetryState
from conftest import SESSION_CLOSED_MESSAGE, FakeSessionFactory, FakeSite


def flaky(failures, exc_factory=lambda n: TransientNavigation(f"timeout #{n}")):
    calls = []

    def operation(session):
        calls.append(session)
        if len(calls) <= failures:
            raise exc_factory(len(calls))
        return "ok"

    operation.calls = calls
    return operation


@pytest.mark.parametrize("m, max_attempts", [(0, 1), (1, 2), (2, 5), (4, 5)])
def test_succeeds_after_m_failures(m, max_attempts, sleep):
    factory = FakeSessionFactory(FakeSite())
    policy = RetryPolicy(max_attempts, base_delay=2.0, sleep=sleep)
    operation = flaky(m)

    state = policy.new_state()
    assert policy.run(operation, factory, label="u", state=state) == "ok"
    assert state.attempt == m + 1
    assert state.state == RetryState.SUCCEEDED
    assert len(state.errors) == m
    # linear backoff: attempt × base_delay
    assert sleep.calls == [2.0 * n for n in range(1, m + 1)]


@pytest.mark.parametrize("m, max_attempts", [(1, 1), (3, 3), (5, 2)])
def test_exhausts_when_attempts_do_not_exceed_failures(m, max_attempts, sleep):
    factory = FakeSessionFactory(FakeSite())
    policy = RetryPolicy(max_attempts, base_delay=1.0, sleep=sleep)
    operation = flaky(m)

    with pytest.raises(RetriesExhausted) as info:
        policy.run(operation, factory, label="u")

    assert info.value.attempts == max_attempts
    assert len(operation.calls) == max_attempts
    assert isinstance(info.value.__cause__, TransientNavigation)
    assert info.value.last_error is info.value.__cause__
    assert info.value.state.state == RetryState.EXHAUSTED
    assert info.value.state.errors == info.value.history
    # no sleep after the final attempt
    assert len(sleep.calls) == max_attempts - 1


def test_transient_failures_keep_the_session(sleep):
    factory = FakeSessionFactory(FakeSite())
    policy = RetryPolicy(3, base_delay=0, sleep=sleep)
    operation = flaky(2)

    policy.run(operation, factory)
    assert len(factory.sessions) == 1
    assert operation.calls[0] is operation.calls[2]
    assert factory.sessions[0].closed


def test_session_loss_recreates_session_without_delay(sleep):
    factory = FakeSessionFactory(FakeSite())
    policy = RetryPolicy(3, base_delay=5.0, sleep=sleep)
    operation = flaky(1, lambda n: PlaywrightError(SESSION_CLOSED_MESSAGE))

    state = policy.new_state()
    assert policy.run(operation, factory, label="u", state=state) == "ok"
    assert len(factory.sessions) == 2
    assert all(s.closed for s in factory.sessions)
    assert factory.events == [("open", "u"), ("close", "u"), ("open", "u"), ("close", "u")]
    assert sleep.calls == []
    assert state.sessions_created == 2


def test_session_closed_on_exhaustion(sleep):
    factory = FakeSessionFactory(FakeSite())
    policy = RetryPolicy(2, base_delay=0, sleep=sleep)

    with pytest.raises(RetriesExhausted):
        policy.run(flaky(10, lambda n: SessionLost("gone")), factory)
    assert len(factory.sessions) == 2
    assert all(s.closed for s in factory.sessions)


def test_session_closed_on_base_exception(sleep):
    factory = FakeSessionFactory(FakeSite())
    policy = RetryPolicy(3, sleep=sleep)

    def interrupted(session):
        raise KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        policy.run(interrupted, factory)
    assert factory.sessions[0].closed


def test_launch_failure_counts_as_attempt(sleep):
    site = FakeSite()
    inner = FakeSessionFactory(site)
    launches = []

    def factory(label=""):
        launches.append(label)
        if len(launches) == 1:
            raise PlaywrightError("Executable doesn't exist")
        return inner(label)

    policy = RetryPolicy(2, base_delay=1.0, sleep=sleep)
    state = policy.new_state()
    assert policy.run(lambda s: "ok", factory, state=state) == "ok"
    assert state.attempt == 2
    assert len(inner.sessions) == 1


def test_shared_policy_keeps_run_state_per_caller(sleep):
    factory = FakeSessionFactory(FakeSite())
    policy = RetryPolicy(5, base_delay=0, sleep=sleep)
    started = threading.Barrier(2)
    states = {}

    def worker(name, failures):
        state = policy.new_state()
        calls = []

        def operation(session):
            calls.append(session)
            if len(calls) == 1:
                started.wait(timeout=5)
            if len(calls) <= failures:
                raise TransientNavigation(f"{name} #{len(calls)}")
            return name

        policy.run(operation, factory, label=name, state=state)
        states[name] = state

    threads = [
        threading.Thread(target=worker, args=("slow", 3)),
        threading.Thread(target=worker, args=("fast", 0)),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert states["slow"].attempt == 4
    assert states["fast"].attempt == 1
    assert all("slow" in str(e) for e in states["slow"].errors)
    assert states["fast"].errors == []


def test_custom_session_loss_predicate(sleep):
    factory = FakeSessionFactory(FakeSite())
    policy = RetryPolicy(
        2, base_delay=0, sleep=sleep,
        session_loss_predicate=lambda exc: isinstance(exc, ValueError),
    )
    policy.run(flaky(1, lambda n: ValueError("boom")), factory)
    assert len(factory.sessions) == 2


def test_rejects_zero_attempts():
    with pytest.raises(ValueError):
        RetryPolicy(0)


@pytest.mark.parametrize(
    "exc, expected",
    [
        (PlaywrightError(SESSION_CLOSED_MESSAGE), True),
        (PlaywrightError("Browser has been closed"), True),
        (PlaywrightError("Page crashed"), True),
        (PlaywrightTimeoutError("Timeout 30000ms exceeded."), False),
        (PlaywrightError("net::ERR_CONNECTION_RESET"), False),
        (SessionLost("x"), True),
        (NoItemsFound("alice"), False),
        (RuntimeError("Target closed"), False),
    ],
)
def test_is_session_lost(exc, expected):
    assert is_session_lost(exc) is expected
