import pytest

from nodepath.services.state_machine import (
    ExecutionStatus,
    InvalidTransitionError,
    can_transition,
    coerce_status,
    complete,
    fail,
    reactivate,
    transition,
)


class TestValidTransitions:
    def test_active_to_completed(self):
        assert transition(ExecutionStatus.ACTIVE, ExecutionStatus.COMPLETED) == ExecutionStatus.COMPLETED

    def test_active_to_failed(self):
        assert transition(ExecutionStatus.ACTIVE, ExecutionStatus.FAILED) == ExecutionStatus.FAILED

    def test_completed_to_active(self):
        assert transition(ExecutionStatus.COMPLETED, ExecutionStatus.ACTIVE) == ExecutionStatus.ACTIVE

    def test_failed_to_active(self):
        assert transition(ExecutionStatus.FAILED, ExecutionStatus.ACTIVE) == ExecutionStatus.ACTIVE

    def test_same_status_is_noop(self):
        assert transition(ExecutionStatus.FAILED, ExecutionStatus.FAILED) == ExecutionStatus.FAILED


class TestInvalidTransitions:
    def test_completed_to_failed(self):
        with pytest.raises(InvalidTransitionError):
            transition(ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)

    def test_failed_to_completed(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(ExecutionStatus.FAILED, ExecutionStatus.COMPLETED)
        assert "failed -> completed" in str(exc_info.value)


class TestHelperFunctions:
    def test_complete(self):
        assert complete(ExecutionStatus.ACTIVE) == ExecutionStatus.COMPLETED

    def test_fail(self):
        assert fail(ExecutionStatus.ACTIVE) == ExecutionStatus.FAILED

    def test_fail_from_completed_raises(self):
        with pytest.raises(InvalidTransitionError):
            fail(ExecutionStatus.COMPLETED)

    def test_reactivate(self):
        assert reactivate(ExecutionStatus.COMPLETED) == ExecutionStatus.ACTIVE
        assert reactivate(ExecutionStatus.FAILED) == ExecutionStatus.ACTIVE


class TestCanTransition:
    def test_valid_returns_true(self):
        assert can_transition(ExecutionStatus.ACTIVE, ExecutionStatus.COMPLETED) is True

    def test_invalid_returns_false(self):
        assert can_transition(ExecutionStatus.COMPLETED, ExecutionStatus.FAILED) is False


class TestCoerceStatus:
    def test_known_value(self):
        assert coerce_status("completed") is ExecutionStatus.COMPLETED

    @pytest.mark.parametrize("value", [None, "", "paused"])
    def test_unknown_or_empty_is_active(self, value):
        assert coerce_status(value) is ExecutionStatus.ACTIVE
