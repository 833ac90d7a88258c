import threading
import time

from canvas_looper.auth_coordinator import (
    AuthDecision,
    AuthErrorCoordinator,
    AuthState,
    ConsoleOperator,
    OperatorInterface,
)


class GatedOperator(OperatorInterface):
    """Blocks until released, then answers with ``choice``."""

    def __init__(self, choice="continue"):
        self.choice = choice
        self.calls = 0
        self.asked = threading.Event()
        self.release = threading.Event()

    def request_auth_decision(self):
        self.calls += 1
        self.asked.set()
        self.release.wait(5)
        return self.choice


class BrokenOperator(OperatorInterface):
    def request_auth_decision(self):
        raise ConnectionError("side panel closed")


def report_in_threads(coordinator, count):
    results = [None] * count

    def worker(i):
        results[i] = coordinator.report_auth_failure()

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    return threads, results


def test_concurrent_failures_issue_one_decision_request():
    operator = GatedOperator("continue")
    coordinator = AuthErrorCoordinator(operator=operator, decision_timeout=5)

    threads, results = report_in_threads(coordinator, 2)
    assert operator.asked.wait(2)
    time.sleep(0.05)
    assert coordinator.state is AuthState.AWAITING_DECISION

    operator.release.set()
    for t in threads:
        t.join(2)

    assert operator.calls == 1
    assert coordinator.decision_requests == 1
    assert results == [AuthDecision.CONTINUE, AuthDecision.CONTINUE]
    assert coordinator.state is AuthState.IDLE


def test_shutdown_is_sticky():
    operator = GatedOperator("shutdown")
    operator.release.set()
    coordinator = AuthErrorCoordinator(operator=operator, decision_timeout=5)

    assert coordinator.report_auth_failure() is AuthDecision.SHUTDOWN
    assert coordinator.is_shutdown
    assert coordinator.report_auth_failure() is AuthDecision.SHUTDOWN
    assert operator.calls == 1


def test_concurrent_waiters_share_shutdown_decision():
    operator = GatedOperator("shutdown")
    coordinator = AuthErrorCoordinator(operator=operator, decision_timeout=5)

    threads, results = report_in_threads(coordinator, 3)
    assert operator.asked.wait(2)
    operator.release.set()
    for t in threads:
        t.join(2)

    assert results == [AuthDecision.SHUTDOWN] * 3
    assert operator.calls == 1


def test_continue_allows_later_requests():
    operator = GatedOperator("continue")
    operator.release.set()
    coordinator = AuthErrorCoordinator(operator=operator, decision_timeout=5)

    assert coordinator.report_auth_failure() is AuthDecision.CONTINUE
    assert coordinator.report_auth_failure() is AuthDecision.CONTINUE
    assert operator.calls == 2


def test_timeout_falls_back_to_default():
    operator = GatedOperator("shutdown")
    coordinator = AuthErrorCoordinator(operator=operator, decision_timeout=0.1)

    assert coordinator.report_auth_failure() is AuthDecision.CONTINUE
    assert coordinator.state is AuthState.IDLE

    # a late reply to the expired request is ignored
    operator.release.set()
    time.sleep(0.05)
    assert coordinator.state is AuthState.IDLE


def test_timeout_default_is_configurable():
    operator = GatedOperator("continue")
    coordinator = AuthErrorCoordinator(
        operator=operator,
        decision_timeout=0.1,
        default_decision=AuthDecision.SHUTDOWN,
    )

    assert coordinator.report_auth_failure() is AuthDecision.SHUTDOWN
    assert coordinator.is_shutdown
    operator.release.set()


def test_missing_operator_uses_default():
    coordinator = AuthErrorCoordinator(operator=None)
    assert coordinator.report_auth_failure() is AuthDecision.CONTINUE
    assert coordinator.state is AuthState.IDLE


def test_unreachable_operator_uses_default():
    coordinator = AuthErrorCoordinator(operator=BrokenOperator(), decision_timeout=2)
    assert coordinator.report_auth_failure() is AuthDecision.CONTINUE


def test_external_resolve_and_reset():
    operator = GatedOperator("continue")
    coordinator = AuthErrorCoordinator(operator=operator, decision_timeout=5)

    threads, results = report_in_threads(coordinator, 1)
    assert operator.asked.wait(2)
    coordinator.resolve("shutdown")
    threads[0].join(2)

    assert results == [AuthDecision.SHUTDOWN]
    assert coordinator.is_shutdown

    coordinator.reset()
    assert coordinator.state is AuthState.IDLE
    operator.release.set()


def test_resolve_without_pending_request_is_ignored():
    coordinator = AuthErrorCoordinator(operator=None)
    coordinator.resolve("shutdown")
    assert coordinator.state is AuthState.IDLE


def test_console_operator_parses_answers():
    assert ConsoleOperator(input_func=lambda prompt: "s").request_auth_decision() == "shutdown"
    assert ConsoleOperator(input_func=lambda prompt: "Shutdown").request_auth_decision() == "shutdown"
    assert ConsoleOperator(input_func=lambda prompt: "c").request_auth_decision() == "continue"
    assert ConsoleOperator(input_func=lambda prompt: "").request_auth_decision() == "continue"
