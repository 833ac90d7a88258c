"""
Canvas Authorization Error Coordinator

When any worker sees a confirmed authorization failure, the coordinator
asks the operator whether to keep going or shut the run down. Only one
decision request is ever outstanding; other workers that hit the same
failure wait on it. A "shutdown" answer is sticky for the rest of the run.

If the operator does not answer within ``decision_timeout`` (or there is
no operator at all) the configured default decision applies, so the
pipeline never hangs.
"""

import logging
import threading
from enum import Enum
from typing import Optional, Callable

from . import config

logger = logging.getLogger(__name__)


class AuthState(Enum):
    IDLE = 'idle'
    AWAITING_DECISION = 'awaiting_decision'
    SHUTDOWN_REQUESTED = 'shutdown_requested'


class AuthDecision(Enum):
    CONTINUE = 'continue'
    SHUTDOWN = 'shutdown'

    @classmethod
    def parse(cls, value) -> Optional['AuthDecision']:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class OperatorInterface:
    """Something that can ask a human how to handle an auth failure."""

    def request_auth_decision(self) -> str:
        """Return 'continue' or 'shutdown'. May block."""
        raise NotImplementedError


class ConsoleOperator(OperatorInterface):
    """Prompt on the terminal."""

    PROMPT = (
        "\nCanvas rejected the session (not authorized).\n"
        "Log back in to Canvas, then choose [c]ontinue or [s]hutdown: "
    )

    def __init__(self, input_func: Callable[[str], str] = input):
        self.input_func = input_func

    def request_auth_decision(self) -> str:
        answer = self.input_func(self.PROMPT).strip().lower()
        return 'shutdown' if answer.startswith('s') else 'continue'


class AuthErrorCoordinator:
    """
    Process-wide latch for authorization failures.

    States move IDLE -> AWAITING_DECISION on the first failure, then back
    to IDLE on "continue" or on to SHUTDOWN_REQUESTED on "shutdown".
    report_auth_failure() never raises; callers stop their own loops when
    it returns SHUTDOWN.
    """

    def __init__(
        self,
        operator: Optional[OperatorInterface] = None,
        decision_timeout: float = config.AUTH_DECISION_TIMEOUT,
        default_decision: Optional[AuthDecision] = None
    ):
        self.operator = operator
        self.decision_timeout = decision_timeout
        self.default_decision = (
            default_decision
            or AuthDecision.parse(config.AUTH_DECISION_DEFAULT)
            or AuthDecision.CONTINUE
        )

        self._cond = threading.Condition()
        self._state = AuthState.IDLE
        self._round = 0
        self._resolved_round = 0
        self._last_decision: Optional[AuthDecision] = None
        self.decision_requests = 0

    @property
    def state(self) -> AuthState:
        with self._cond:
            return self._state

    @property
    def is_shutdown(self) -> bool:
        return self.state is AuthState.SHUTDOWN_REQUESTED

    def report_auth_failure(self) -> AuthDecision:
        """
        Record an authorization failure and wait for the operator's decision.

        Returns:
            AuthDecision.CONTINUE or AuthDecision.SHUTDOWN
        """
        with self._cond:
            if self._state is AuthState.SHUTDOWN_REQUESTED:
                return AuthDecision.SHUTDOWN

            if self._state is AuthState.AWAITING_DECISION:
                round_ = self._round
                logger.info("Authorization decision already pending - waiting for it")
            else:
                self._state = AuthState.AWAITING_DECISION
                self._round += 1
                round_ = self._round
                self.decision_requests += 1
                logger.warning("Canvas authorization error detected - pausing for operator input")
                self._request_decision(round_)

            answered = self._cond.wait_for(
                lambda: self._resolved_round >= round_,
                timeout=self.decision_timeout
            )
            if not answered:
                logger.warning(
                    f"No operator response within {self.decision_timeout}s - "
                    f"defaulting to {self.default_decision.value}"
                )
                self._resolve_locked(self.default_decision, round_)

            if self._resolved_round == round_ and self._last_decision is not None:
                return self._last_decision
            if self._state is AuthState.SHUTDOWN_REQUESTED:
                return AuthDecision.SHUTDOWN
            return AuthDecision.CONTINUE

    def resolve(self, choice, round_: Optional[int] = None):
        """
        Deliver the operator's reply.

        Replies arriving when no decision is pending, or for an older
        request, are ignored. Unrecognised choices map to the default.
        """
        with self._cond:
            self._resolve_locked(AuthDecision.parse(choice) or self.default_decision, round_)

    def reset(self):
        """Return to IDLE for a new run, releasing anyone still waiting."""
        with self._cond:
            self._state = AuthState.IDLE
            self._resolved_round = self._round
            self._last_decision = None
            self._cond.notify_all()

    def _resolve_locked(self, decision: AuthDecision, round_: Optional[int]):
        if self._state is not AuthState.AWAITING_DECISION:
            return
        if round_ is not None and round_ != self._round:
            return

        self._resolved_round = self._round
        self._last_decision = decision
        if decision is AuthDecision.SHUTDOWN:
            self._state = AuthState.SHUTDOWN_REQUESTED
            logger.warning("Operator requested shutdown after authorization error")
        else:
            self._state = AuthState.IDLE
            logger.info("Continuing after authorization error")
        self._cond.notify_all()

    def _request_decision(self, round_: int):
        if self.operator is None:
            logger.warning(f"No operator interface attached - defaulting to {self.default_decision.value}")
            self._resolve_locked(self.default_decision, round_)
            return

        def ask():
            try:
                choice = self.operator.request_auth_decision()
            except Exception as e:
                logger.warning(f"Could not reach operator interface ({e}) - using default decision")
                choice = None
            self.resolve(choice, round_)

        threading.Thread(target=ask, name='auth-decision', daemon=True).start()
