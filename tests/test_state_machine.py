"""Tests for the transition table and cancellation token."""

import pytest

from taskset_deploy.lifecycle.manager import TaskSetLifecycleManager
from taskset_deploy.monitoring.health import HealthMonitor
from taskset_deploy.orchestrator import (
    TERMINAL_STATES,
    TRANSITIONS,
    Deployment,
    DeploymentState,
    DeploymentStateMachine,
    InvalidTransitionError,
)
from taskset_deploy.traffic.shifter import TrafficShifter
from taskset_deploy.utils.cancellation import CancellationToken
from taskset_deploy.utils.errors import ShiftError

S = DeploymentState


@pytest.fixture
def machine(platform) -> DeploymentStateMachine:
    return DeploymentStateMachine(
        TaskSetLifecycleManager(platform), TrafficShifter(platform), HealthMonitor(platform)
    )


@pytest.fixture
def deployment(context) -> Deployment:
    return Deployment(id="d1", context=context, task_definition="web:2")


class TestTransitionTable:
    def test_every_state_has_an_entry(self) -> None:
        assert set(TRANSITIONS) == set(DeploymentState)

    def test_terminal_states_have_no_exits(self) -> None:
        for state in TERMINAL_STATES:
            assert TRANSITIONS[state] == frozenset()

    def test_every_live_state_can_fail(self) -> None:
        for state, targets in TRANSITIONS.items():
            if state not in TERMINAL_STATES:
                assert S.FAILED in targets

    def test_retiring_cannot_roll_back(self) -> None:
        assert S.ROLLING_BACK not in TRANSITIONS[S.RETIRING_OLD]


class TestTransition:
    def test_illegal_edge_raises(self, machine, deployment) -> None:
        with pytest.raises(InvalidTransitionError):
            machine.transition(deployment, S.PROMOTING)

        assert deployment.state == S.INIT
        assert deployment.history == []

    def test_records_history(self, machine, deployment) -> None:
        transition = machine.transition(deployment, S.PROVISIONING_NEW)

        assert transition.from_state == S.INIT
        assert deployment.history == [transition]
        assert deployment.cause is None

    def test_error_cause_sets_type(self, machine, deployment) -> None:
        machine.transition(deployment, S.ROLLING_BACK, ShiftError("listener rejected the update"))

        assert deployment.cause == "listener rejected the update"
        assert deployment.error_type == "ShiftError"

    def test_terminal_sets_finished_at(self, machine, deployment) -> None:
        machine.transition(deployment, S.FAILED, RuntimeError("boom"))

        assert deployment.is_terminal
        assert deployment.finished_at is not None
        assert deployment.cause == "RuntimeError: boom"

    def test_callback_errors_do_not_stop_the_machine(self, platform, deployment) -> None:
        def broken(deployment, transition):
            raise RuntimeError("listener down")

        machine = DeploymentStateMachine(
            TaskSetLifecycleManager(platform), TrafficShifter(platform), HealthMonitor(platform),
            on_transition=broken,
        )

        machine.transition(deployment, S.PROVISIONING_NEW)

        assert deployment.state == S.PROVISIONING_NEW


class TestRun:
    def test_cancelled_before_start_rolls_back(self, machine, deployment, platform) -> None:
        deployment.token.cancel("changed my mind")

        machine.run(deployment)

        assert [t.to_state for t in deployment.history] == [S.INIT, S.ROLLING_BACK, S.ROLLED_BACK]
        assert deployment.cause == "Cancelled: changed my mind"
        assert "create_task_set" not in platform.calls


class TestCancellationToken:
    def test_first_reason_wins(self) -> None:
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")

        assert token.cancelled
        assert token.reason == "first"

    def test_external_check(self) -> None:
        requested = {"flag": False}
        token = CancellationToken(external_check=lambda: requested["flag"])

        assert not token.cancelled
        requested["flag"] = True
        assert token.cancelled
        assert "deployment store" in token.reason

    def test_wait_returns_early_when_cancelled(self) -> None:
        token = CancellationToken()
        token.cancel()

        assert token.wait(10) is True

    def test_wait_times_out(self) -> None:
        assert CancellationToken().wait(0) is False
