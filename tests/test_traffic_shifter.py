"""Tests for the listener weight transaction."""

import pytest

from taskset_deploy.lifecycle.models import TaskSetHandle, TaskSetStatus
from taskset_deploy.traffic.shifter import TrafficShifter, next_weight
from taskset_deploy.utils.errors import ShiftError

from tests.fakes import BLUE_TG, GREEN_TG, client_error


@pytest.fixture
def old() -> TaskSetHandle:
    return TaskSetHandle(id="ecs-svc/1", arn="arn:old", task_definition="web:1",
                         target_group_arn=BLUE_TG, weight=100, status=TaskSetStatus.STEADY, primary=True)


@pytest.fixture
def new() -> TaskSetHandle:
    return TaskSetHandle(id="ecs-svc/2", arn="arn:new", task_definition="web:2",
                         target_group_arn=GREEN_TG, status=TaskSetStatus.STEADY)


@pytest.fixture
def shifter(platform) -> TrafficShifter:
    return TrafficShifter(platform)


class TestNextWeight:
    @pytest.mark.parametrize("current,target,step,expected", [
        (0, 100, 25, 25),
        (75, 100, 40, 100),
        (100, 0, 100, 0),
        (30, 0, 25, 5),
        (50, 50, 10, 50),
    ])
    def test_moves_toward_target_without_overshoot(self, current, target, step, expected) -> None:
        assert next_weight(current, target, step) == expected


class TestStep:
    def test_single_increment(self, shifter, platform, context, old, new) -> None:
        weights = shifter.step(context, old, new, 100, 25)

        assert weights == (75, 25)
        assert platform.weights == {BLUE_TG: 75, GREEN_TG: 25}
        assert (old.weight, new.weight) == (75, 25)

    def test_write_carries_read_precondition(self, shifter, platform, context, old, new) -> None:
        platform.weights = {BLUE_TG: 60, GREEN_TG: 40}

        shifter.step(context, old, new, 100, 25)

        assert platform.weights == {BLUE_TG: 35, GREEN_TG: 65}

    def test_at_target_does_not_write(self, shifter, platform, context, old, new) -> None:
        platform.weights = {BLUE_TG: 0, GREEN_TG: 100}

        assert shifter.step(context, old, new, 100, 25) == (0, 100)
        assert "modify_listener_weights" not in platform.calls

    def test_retries_conflicts(self, shifter, platform, context, old, new) -> None:
        platform.conflicts = 3

        assert shifter.step(context, old, new, 100, 50) == (50, 50)
        assert platform.calls.count("modify_listener_weights") == 4

    def test_gives_up_after_max_retries(self, shifter, platform, context, old, new) -> None:
        platform.conflicts = 10

        with pytest.raises(ShiftError) as exc_info:
            shifter.step(context, old, new, 100, 50)

        assert exc_info.value.context.aws_error_code == "ConcurrentModification"
        assert platform.calls.count("modify_listener_weights") == context.settings.shift_max_retries + 1
        assert platform.weights == {BLUE_TG: 100, GREEN_TG: 0}

    def test_rejected_update_is_not_retried(self, shifter, platform, context, old, new) -> None:
        platform.failures["modify_listener_weights"] = client_error("AccessDenied")

        with pytest.raises(ShiftError):
            shifter.step(context, old, new, 100, 50)

        assert platform.calls.count("modify_listener_weights") == 1

    def test_weights_not_summing_to_100_are_refused(self, shifter, platform, context, old, new) -> None:
        platform.weights = {BLUE_TG: 70, GREEN_TG: 20}

        with pytest.raises(ShiftError, match="do not split 100"):
            shifter.step(context, old, new, 100, 10)

        assert "modify_listener_weights" not in platform.calls

    def test_stray_target_group_is_refused(self, shifter, platform, context, old, new) -> None:
        platform.weights = {BLUE_TG: 50, GREEN_TG: 40, "arn:other": 10}

        with pytest.raises(ShiftError):
            shifter.step(context, old, new, 100, 10)

    @pytest.mark.parametrize("target,step", [(101, 10), (-1, 10), (50, 0), (50, 101)])
    def test_invalid_arguments(self, shifter, context, old, new, target, step) -> None:
        with pytest.raises(ValueError):
            shifter.step(context, old, new, target, step)


class TestShift:
    def test_shift_to_target(self, shifter, platform, context, old, new) -> None:
        assert shifter.shift(context, old, new, 100, 30) == (0, 100)
        assert platform.new_weights() == [0, 30, 60, 90, 100]

    def test_shift_back_in_one_step(self, shifter, platform, context, old, new) -> None:
        platform.weights = {BLUE_TG: 40, GREEN_TG: 60}

        assert shifter.shift(context, old, new, 0, 100) == (100, 0)
        assert platform.calls.count("modify_listener_weights") == 1

    def test_current_weights(self, shifter, platform, context, old, new) -> None:
        platform.weights = {BLUE_TG: 90, GREEN_TG: 10}

        assert shifter.current_weights(context, old, new) == (90, 10)


class TestAttach:
    def test_adds_idle_target_group_at_zero(self, shifter, platform, context, old) -> None:
        platform.weights = {BLUE_TG: 100}

        assert shifter.attach(context, old, GREEN_TG) == {BLUE_TG: 100, GREEN_TG: 0}
        assert platform.weight_log[-1] == {BLUE_TG: 100, GREEN_TG: 0}

    def test_listed_target_group_is_left_alone(self, shifter, platform, context, old) -> None:
        assert shifter.attach(context, old, GREEN_TG) == {BLUE_TG: 100, GREEN_TG: 0}
        assert "modify_listener_weights" not in platform.calls

    def test_conflicting_attach_is_retried(self, shifter, platform, context, old) -> None:
        platform.weights = {BLUE_TG: 100}
        platform.conflicts = 1

        shifter.attach(context, old, GREEN_TG)

        assert platform.weights == {BLUE_TG: 100, GREEN_TG: 0}
        assert platform.calls.count("modify_listener_weights") == 2

    def test_listener_outside_the_pair_is_refused(self, shifter, platform, context, old) -> None:
        platform.weights = {"arn:other": 100}

        with pytest.raises(ShiftError, match="do not split 100"):
            shifter.attach(context, old, GREEN_TG)

        assert "modify_listener_weights" not in platform.calls
