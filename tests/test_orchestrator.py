"""End-to-end deployment scenarios against the in-memory platform."""

import threading
from dataclasses import replace

import pytest

from taskset_deploy.orchestrator import (
    EXIT_CODES,
    DeploymentOrchestrator,
    DeploymentState,
)
from taskset_deploy.utils.errors import (
    ConfigurationError,
    ConflictError,
    DeploymentNotFoundError,
    DeploymentTimeoutError,
)

from tests.fakes import BLUE_TG, GREEN_TG, client_error, wait_for

NEW_TD = "arn:aws:ecs:us-east-1:123456789012:task-definition/web:2"

S = DeploymentState


def states(deployment):
    return [t.to_state for t in deployment.history]


def assert_weights_always_sum_to_100(platform):
    assert all(sum(weights.values()) == 100 for weights in platform.weight_log)
    assert platform.violations == []


class TestHappyPath:
    """All verdicts healthy: the new TaskSet takes over."""

    def test_succeeds_with_full_shift(self, orchestrator, platform) -> None:
        deployment = orchestrator.run("web", NEW_TD)

        assert deployment.state == S.SUCCEEDED
        assert deployment.weights == (0, 100)
        assert platform.weights == {BLUE_TG: 0, GREEN_TG: 100}
        assert deployment.old.id in platform.deleted
        assert platform.primary_id == deployment.new.id
        assert deployment.new.task_definition == NEW_TD
        assert_weights_always_sum_to_100(platform)

    def test_shifts_in_clamped_increments(self, orchestrator, platform) -> None:
        orchestrator.run("web", NEW_TD)

        assert platform.new_weights() == [0, 25, 50, 75, 100]

    def test_step_that_overshoots_clamps_to_target(self, orchestrator, platform) -> None:
        orchestrator.run("web", NEW_TD, overrides={"step_percent": 40})

        assert platform.new_weights() == [0, 40, 80, 100]

    def test_new_weight_is_monotonic(self, orchestrator, platform) -> None:
        orchestrator.run("web", NEW_TD, overrides={"step_percent": 10})

        weights = platform.new_weights()
        assert weights == sorted(weights)
        assert weights[-1] == 100

    def test_state_sequence(self, orchestrator) -> None:
        deployment = orchestrator.run("web", NEW_TD)

        sequence = states(deployment)
        assert sequence[:4] == [S.INIT, S.PROVISIONING_NEW, S.AWAIT_STEADY, S.SHIFTING]
        assert sequence[-3:] == [S.PROMOTING, S.RETIRING_OLD, S.SUCCEEDED]
        assert sequence.count(S.SHIFTING) == 4
        assert sequence.count(S.MONITORING) == 4

    def test_new_task_set_uses_idle_target_group(self, orchestrator, platform) -> None:
        platform.weights = {BLUE_TG: 0, GREEN_TG: 100}
        platform.weight_log = [dict(platform.weights)]
        platform.task_sets.clear()
        platform.seed_primary("arn:aws:ecs:us-east-1:123456789012:task-definition/web:1", GREEN_TG)

        deployment = orchestrator.run("web", NEW_TD)

        assert deployment.state == S.SUCCEEDED
        assert deployment.new.target_group_arn == BLUE_TG
        assert platform.weights == {BLUE_TG: 100, GREEN_TG: 0}

    def test_idle_target_group_is_attached_before_create(self, orchestrator, platform) -> None:
        platform.weights = {BLUE_TG: 100}
        platform.weight_log = [dict(platform.weights)]

        deployment = orchestrator.run("web", NEW_TD)

        assert deployment.state == S.SUCCEEDED
        assert platform.weight_log[1] == {BLUE_TG: 100, GREEN_TG: 0}
        assert platform.calls.index("modify_listener_weights") < platform.calls.index("create_task_set")
        assert_weights_always_sum_to_100(platform)

    def test_old_task_set_is_scaled_down_before_delete(self, orchestrator, platform) -> None:
        deployment = orchestrator.run("web", NEW_TD)

        assert platform.scales[deployment.old.id] == 0
        assert platform.scales[deployment.new.id] == 100.0
        assert deployment.warnings == []
        assert platform.violations == []

    def test_status_reports_health_and_exit_code(self, orchestrator) -> None:
        deployment = orchestrator.run("web", NEW_TD)

        status = orchestrator.get_status(deployment.id)
        assert status.state == S.SUCCEEDED
        assert status.weights == (0, 100)
        assert status.health_summary == {"old": "HEALTHY", "new": "HEALTHY"}
        assert status.cause is None
        assert status.exit_code == 0

    def test_conflicting_listener_writes_are_retried(self, orchestrator, platform) -> None:
        platform.conflicts = 2

        deployment = orchestrator.run("web", NEW_TD)

        assert deployment.state == S.SUCCEEDED
        assert_weights_always_sum_to_100(platform)

    def test_listeners_see_every_transition(self, orchestrator) -> None:
        seen = []
        orchestrator.add_listener(lambda status, transition: seen.append(transition.to_state))

        deployment = orchestrator.run("web", NEW_TD)

        assert seen == states(deployment)

    def test_failing_listener_does_not_break_deployment(self, orchestrator) -> None:
        def broken(status, transition):
            raise RuntimeError("display gone")

        orchestrator.add_listener(broken)

        assert orchestrator.run("web", NEW_TD).state == S.SUCCEEDED


class TestRollback:
    """Health failures and errors converge to (100, 0) with the new TaskSet deleted."""

    def test_unhealthy_after_first_increment_rolls_back(self, orchestrator, platform) -> None:
        platform.unhealthy_when = lambda tg, weights: weights[GREEN_TG] >= 25

        deployment = orchestrator.run("web", NEW_TD)

        assert deployment.state == S.ROLLED_BACK
        assert platform.weight_pairs() == [(100, 0), (75, 25), (100, 0)]
        assert deployment.new.id in platform.deleted
        assert deployment.old.id not in platform.deleted
        assert platform.primary_id == deployment.old.id
        assert deployment.error_type == "UnhealthyError"
        assert "Health check failed" in deployment.cause
        assert_weights_always_sum_to_100(platform)

    def test_rollback_is_a_single_step(self, orchestrator, platform) -> None:
        platform.unhealthy_when = lambda tg, weights: weights[GREEN_TG] >= 75

        deployment = orchestrator.run("web", NEW_TD)

        assert deployment.state == S.ROLLED_BACK
        assert platform.new_weights() == [0, 25, 50, 75, 0]

    def test_status_after_rollback(self, orchestrator, platform) -> None:
        platform.unhealthy_when = lambda tg, weights: weights[GREEN_TG] >= 25

        deployment = orchestrator.run("web", NEW_TD)

        status = orchestrator.get_status(deployment.id)
        assert status.weights == (100, 0)
        assert status.health_summary["new"].startswith("UNHEALTHY")
        assert status.exit_code == EXIT_CODES[S.ROLLED_BACK] == 2

    def test_alarm_in_alarm_state_rolls_back(self, orchestrator, platform) -> None:
        platform.alarm_states = {"web-5xx-green": "ALARM"}

        deployment = orchestrator.run(
            "web", NEW_TD, overrides={"health": {"alarm_names": ["web-5xx-green"]}}
        )

        assert deployment.state == S.ROLLED_BACK
        assert "web-5xx-green" in deployment.cause
        assert platform.weights == {BLUE_TG: 100, GREEN_TG: 0}

    def test_metrics_unavailable_rolls_back(self, orchestrator, platform) -> None:
        platform.failures["get_metric_datapoints"] = client_error("AccessDenied")

        deployment = orchestrator.run("web", NEW_TD)

        assert deployment.state == S.ROLLED_BACK
        assert "metrics unavailable" in deployment.cause
        assert platform.weights == {BLUE_TG: 100, GREEN_TG: 0}

    def test_steady_timeout_rolls_back_without_shifting(self, orchestrator, platform) -> None:
        platform.becomes_steady = False

        deployment = orchestrator.run(
            "web", NEW_TD, overrides={"steady_timeout": 0.05, "poll_interval": 0.01}
        )

        assert states(deployment) == [S.INIT, S.PROVISIONING_NEW, S.ROLLING_BACK, S.ROLLED_BACK]
        assert deployment.error_type == "DeploymentTimeoutError"
        assert "modify_listener_weights" not in platform.calls
        assert deployment.new.id in platform.deleted

    def test_shift_retries_exhausted_rolls_back(self, orchestrator, platform) -> None:
        platform.conflicts = 4

        deployment = orchestrator.run("web", NEW_TD)

        assert deployment.state == S.ROLLED_BACK
        assert deployment.error_type == "ShiftError"
        assert platform.weights == {BLUE_TG: 100, GREEN_TG: 0}
        assert deployment.new.id in platform.deleted

    def test_promote_failure_rolls_back(self, orchestrator, platform) -> None:
        platform.failures["update_primary_task_set"] = client_error("AccessDeniedException")

        deployment = orchestrator.run("web", NEW_TD)

        assert deployment.state == S.ROLLED_BACK
        assert deployment.error_type == "ProvisionError"
        assert platform.weight_pairs()[-1] == (100, 0)
        assert platform.new_weights()[-2:] == [100, 0]
        assert deployment.new.id in platform.deleted
        assert platform.primary_id == deployment.old.id

    def test_rollback_failure_fails_deployment(self, orchestrator, platform) -> None:
        platform.unhealthy_when = lambda tg, weights: weights[GREEN_TG] >= 25
        platform.failures["delete_task_set"] = client_error("AccessDeniedException")

        deployment = orchestrator.run("web", NEW_TD)

        assert deployment.state == S.FAILED
        assert deployment.error_type == "RollbackError"
        assert "Rollback failed" in deployment.cause
        assert "Health check failed" in deployment.cause
        assert platform.weights == {BLUE_TG: 100, GREEN_TG: 0}
        assert states(deployment)[-2:] == [S.ROLLING_BACK, S.FAILED]


class TestFailures:
    def test_create_failure_fails_without_touching_listener(self, orchestrator, platform) -> None:
        platform.failures["create_task_set"] = client_error("ClientException", "Invalid task definition")

        deployment = orchestrator.run("web", NEW_TD)

        assert states(deployment) == [S.INIT, S.FAILED]
        assert deployment.error_type == "ProvisionError"
        assert "Invalid task definition" in deployment.cause
        assert "modify_listener_weights" not in platform.calls

    def test_attach_failure_fails_before_create(self, orchestrator, platform) -> None:
        platform.weights = {BLUE_TG: 100}
        platform.failures["modify_listener_weights"] = client_error("AccessDenied")

        deployment = orchestrator.run("web", NEW_TD)

        assert states(deployment) == [S.INIT, S.FAILED]
        assert deployment.error_type == "ShiftError"
        assert "create_task_set" not in platform.calls
        assert platform.weights == {BLUE_TG: 100}

    def test_missing_primary_fails(self, orchestrator, platform) -> None:
        platform.primary_id = None

        deployment = orchestrator.run("web", NEW_TD)

        assert deployment.state == S.FAILED
        assert "no PRIMARY TaskSet" in deployment.cause

    def test_retire_failure_is_a_warning(self, orchestrator, platform) -> None:
        platform.failures["delete_task_set"] = client_error("AccessDeniedException")

        deployment = orchestrator.run("web", NEW_TD)

        assert deployment.state == S.SUCCEEDED
        assert len(deployment.warnings) == 1
        assert "Failed to delete TaskSet" in deployment.warnings[0]
        assert platform.primary_id == deployment.new.id

    def test_unknown_service_is_rejected(self, orchestrator) -> None:
        with pytest.raises(ConfigurationError):
            orchestrator.submit("api", NEW_TD)

    def test_invalid_overrides_are_rejected(self, orchestrator, platform) -> None:
        with pytest.raises(ConfigurationError):
            orchestrator.submit("web", NEW_TD, overrides={"step_percent": 0})
        assert platform.calls == []


class TestConcurrency:
    def test_second_submit_while_shifting_conflicts(self, orchestrator, platform) -> None:
        platform.shift_gate = threading.Event()
        deployment_id = orchestrator.submit("web", NEW_TD)
        assert platform.shift_entered.wait(5)
        assert orchestrator.get_status(deployment_id).state == S.SHIFTING

        with pytest.raises(ConflictError):
            orchestrator.submit("web", NEW_TD)

        assert orchestrator.get_status(deployment_id).state == S.SHIFTING
        assert platform.calls.count("create_task_set") == 1

        platform.shift_gate.set()
        assert orchestrator.wait(deployment_id, timeout=5).state == S.SUCCEEDED

    def test_service_is_free_again_after_terminal_state(self, orchestrator, platform) -> None:
        first = orchestrator.run("web", NEW_TD)
        second = orchestrator.run("web", "arn:aws:ecs:us-east-1:123456789012:task-definition/web:3")

        assert first.state == second.state == S.SUCCEEDED
        assert second.old.id == first.new.id
        assert orchestrator.active_deployment("web") is None

    def test_services_deploy_independently(self, platform, context) -> None:
        other = replace(context, service="worker")
        orchestrator = DeploymentOrchestrator(platform, {"web": context, "worker": other})
        platform.shift_gate = threading.Event()

        web_id = orchestrator.submit("web", NEW_TD)
        assert platform.shift_entered.wait(5)

        assert orchestrator.active_deployment("web") == web_id
        assert orchestrator.active_deployment("worker") is None
        platform.shift_gate.set()
        orchestrator.wait(web_id, timeout=5)

    def test_wait_timeout(self, orchestrator, platform) -> None:
        platform.shift_gate = threading.Event()
        deployment_id = orchestrator.submit("web", NEW_TD)
        assert platform.shift_entered.wait(5)

        with pytest.raises(DeploymentTimeoutError):
            orchestrator.wait(deployment_id, timeout=0.05)

        platform.shift_gate.set()
        orchestrator.wait(deployment_id, timeout=5)


class TestCancel:
    def test_cancel_while_awaiting_steady(self, orchestrator, platform) -> None:
        platform.becomes_steady = False
        deployment_id = orchestrator.submit(
            "web", NEW_TD, overrides={"steady_timeout": 10, "poll_interval": 0.01}
        )
        assert wait_for(lambda: "describe_task_set" in platform.calls)

        assert orchestrator.cancel(deployment_id) is True

        deployment = orchestrator.wait(deployment_id, timeout=5)
        assert deployment.state == S.ROLLED_BACK
        assert deployment.cause == "Cancelled: cancelled by operator"
        assert deployment.error_type == "DeploymentCancelled"
        assert deployment.new.id in platform.deleted
        assert "modify_listener_weights" not in platform.calls

    def test_cancel_mid_shift_restores_old_weights(self, orchestrator, platform) -> None:
        platform.shift_gate = threading.Event()
        deployment_id = orchestrator.submit("web", NEW_TD)
        assert platform.shift_entered.wait(5)

        assert orchestrator.cancel(deployment_id, reason="bad release") is True
        platform.shift_gate.set()

        deployment = orchestrator.wait(deployment_id, timeout=5)
        assert deployment.state == S.ROLLED_BACK
        assert deployment.cause == "Cancelled: bad release"
        assert platform.weight_pairs() == [(100, 0), (75, 25), (100, 0)]
        assert_weights_always_sum_to_100(platform)

    def test_cancel_after_success_is_refused(self, orchestrator) -> None:
        deployment = orchestrator.run("web", NEW_TD)

        assert orchestrator.cancel(deployment.id) is False
        assert orchestrator.get_status(deployment.id).state == S.SUCCEEDED

    def test_cancel_unknown_deployment(self, orchestrator) -> None:
        with pytest.raises(DeploymentNotFoundError):
            orchestrator.cancel("20240101T000000Z-abcdef")


class TestPersistence:
    @pytest.fixture
    def orchestrator(self, platform, context, store) -> DeploymentOrchestrator:
        return DeploymentOrchestrator(platform, {context.service: context}, store=store)

    def test_terminal_record_is_archived(self, orchestrator, store) -> None:
        deployment = orchestrator.run("web", NEW_TD)

        record = store.load(deployment.id)
        assert record.state == "SUCCEEDED"
        assert record.weights == [0, 100]
        assert [t.to_state for t in record.history][-1] == "SUCCEEDED"
        assert (store.archive_dir / f"{deployment.id}.json").exists()
        assert not (store.deployments_dir / f"{deployment.id}.json").exists()

    def test_status_from_another_process(self, orchestrator, platform, context, store) -> None:
        platform.unhealthy_when = lambda tg, weights: weights[GREEN_TG] >= 25
        deployment = orchestrator.run("web", NEW_TD)

        reader = DeploymentOrchestrator(platform, {context.service: context}, store=store)
        status = reader.get_status(deployment.id)

        assert status.state == S.ROLLED_BACK
        assert status.weights == (100, 0)
        assert status.error_type == "UnhealthyError"
        assert status.history[0].to_state == S.INIT

    def test_service_lock_held_elsewhere_conflicts(self, orchestrator, store, platform) -> None:
        with store.lock_service("web"):
            with pytest.raises(ConflictError):
                orchestrator.submit("web", NEW_TD)

        assert platform.calls == []
        assert orchestrator.run("web", NEW_TD).state == S.SUCCEEDED

    def test_cancel_requested_through_store(self, orchestrator, platform, store) -> None:
        platform.becomes_steady = False
        deployment_id = orchestrator.submit(
            "web", NEW_TD, overrides={"steady_timeout": 10, "poll_interval": 0.01}
        )
        assert wait_for(lambda: "describe_task_set" in platform.calls)

        assert store.request_cancel(deployment_id) is True

        deployment = orchestrator.wait(deployment_id, timeout=5)
        assert deployment.state == S.ROLLED_BACK
        assert "deployment store" in deployment.cause
        assert not store.cancel_requested(deployment_id)

    def test_finished_deployments_beyond_retention_are_served_from_store(self, platform, context, store) -> None:
        orchestrator = DeploymentOrchestrator(platform, {context.service: context}, store=store, retain_finished=1)

        first = orchestrator.run("web", NEW_TD)
        second = orchestrator.run("web", "arn:aws:ecs:us-east-1:123456789012:task-definition/web:3")

        assert first.id not in orchestrator._deployments
        assert second.id in orchestrator._deployments
        assert orchestrator.get_status(first.id).state == S.SUCCEEDED
        with pytest.raises(DeploymentNotFoundError):
            orchestrator.wait(first.id)
