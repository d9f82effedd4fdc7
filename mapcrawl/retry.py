"""
Retry / recovery policy for one job.

State machine: PENDING → ATTEMPTING → SUCCEEDED
                                    ↘ EXHAUSTED

On each failure the error is classified:
  session lost → close the session, open a fresh one, try again (no delay)
  transient    → sleep attempt × base_delay, try again on the same session
Every failure counts as an attempt.  Once attempt >= max_attempts the
policy raises RetriesExhausted chained from the final error.

The session is created lazily on the first attempt and closed on every
exit path — success, exhaustion, or an unexpected BaseException.
"""

import logging
import time
from dataclasses import dataclass, field

from mapcrawl.errors import RetriesExhausted, is_session_lost

logger = logging.getLogger("mapcrawl")


@dataclass
class RetryState:
    """Progress of one attempt sequence."""

    PENDING    = "pending"
    ATTEMPTING = "attempting"
    SUCCEEDED  = "succeeded"
    EXHAUSTED  = "exhausted"

    max_attempts: int
    base_delay: float
    attempt: int = 0
    state: str = "pending"
    sessions_created: int = 0
    errors: list = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.state in (self.SUCCEEDED, self.EXHAUSTED)

    def delay_for(self, attempt: int) -> float:
        """Linear backoff: attempt × base_delay seconds."""
        return attempt * self.base_delay


# Transition table — read by generate_diagrams.py
TRANSITIONS = [
    (RetryState.PENDING,    RetryState.ATTEMPTING, "run()"),
    (RetryState.ATTEMPTING, RetryState.ATTEMPTING, "transient: sleep attempt×base_delay"),
    (RetryState.ATTEMPTING, RetryState.ATTEMPTING, "session lost: recreate session"),
    (RetryState.ATTEMPTING, RetryState.SUCCEEDED,  "operation returned"),
    (RetryState.ATTEMPTING, RetryState.EXHAUSTED,  "attempt >= max_attempts"),
]


class RetryPolicy:
    """
    Parameterised retry wrapper shared by seeding and per-user crawls.

    Args:
        max_attempts: Total attempts including the first (>= 1).
        base_delay: Seconds multiplied by the attempt number between
                    transient retries.
        session_loss_predicate: exc -> bool; True means the session is dead.
        sleep: Sleep function (seconds), injectable for tests.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 3.0,
        *,
        session_loss_predicate=is_session_lost,
        sleep=time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got: {max_attempts!r}")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.session_loss_predicate = session_loss_predicate
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: dict, **kwargs) -> "RetryPolicy":
        return cls(config["max_attempts"], config["base_delay"], **kwargs)

    def new_state(self) -> RetryState:
        """A fresh RetryState for one run(); callers that want to inspect it pass it in."""
        return RetryState(self.max_attempts, self.base_delay)

    def run(self, operation, session_factory, label: str = "job", state: RetryState | None = None):
        """
        Call operation(session) until it returns, recreating the session
        when it is lost.  Returns whatever the operation returns.

        The policy itself holds no per-run state, so one instance can be
        shared by every consumer thread.  Pass *state* (see new_state()) to
        observe attempts and errors after the call.

        Raises:
            RetriesExhausted: every attempt failed; __cause__ is the last error.
        """
        if state is None:
            state = self.new_state()
        session = None
        try:
            state.state = RetryState.ATTEMPTING
            while True:
                state.attempt += 1
                try:
                    if session is None:
                        session = session_factory(label=label)
                        state.sessions_created += 1
                    result = operation(session)
                except Exception as exc:
                    state.errors.append(exc)
                    lost = self.session_loss_predicate(exc)
                    kind = "session lost" if lost else "transient"
                    logger.warning(
                        f"[{label}] Attempt {state.attempt}/{state.max_attempts} failed "
                        f"({kind}): {exc}"
                    )

                    if state.attempt >= state.max_attempts:
                        state.state = RetryState.EXHAUSTED
                        raise RetriesExhausted(
                            label, state.attempt, list(state.errors), state=state
                        ) from exc

                    if lost:
                        logger.info(f"[{label}] Recreating browser session")
                        if session is not None:
                            session.close()
                        session = None
                    else:
                        delay = state.delay_for(state.attempt)
                        logger.info(f"[{label}] Retrying in {delay:.1f}s...")
                        self._sleep(delay)
                    continue

                state.state = RetryState.SUCCEEDED
                if state.attempt > 1:
                    logger.info(f"[{label}] Succeeded on attempt {state.attempt}/{state.max_attempts}")
                return result
        finally:
            if session is not None:
                session.close()
