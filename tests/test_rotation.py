import asyncio
import logging
from typing import Any

import pytest

from channel_relay.rotation import (
    AccountRotator,
    RotationConfig,
    RotationFallbackFailedError,
    RotationInProgressError,
    RotationOnlyOneAccountError,
    RotationOutcome,
    RotationState,
    RotationTargetError,
    next_account_index,
)
from tests.relay_test_utils import FakeDirectory, FakeSessionManager


def _rotator(
    indices: list[int],
    *,
    current: int = 0,
    failing: set[int] | None = None,
    **config: Any,
) -> tuple[AccountRotator, FakeSessionManager]:
    session = FakeSessionManager(current, failing=failing)
    rotator = AccountRotator(
        state=RotationState(),
        config=RotationConfig(**config),
        session=session,
        directory=FakeDirectory(indices),
    )
    return rotator, session


def test_next_account_index_wraps_in_ascending_order() -> None:
    assert next_account_index(1, [3, 1, 2]) == 2
    assert next_account_index(3, [3, 1, 2]) == 1
    assert next_account_index(7, [3, 1, 2]) == 1


def test_switch_to_next_moves_and_resets_counters() -> None:
    rotator, session = _rotator([0, 1, 2])
    rotator.state.failure_count = 2
    rotator.state.usage_count = 10

    result = asyncio.run(rotator.switch_to_next())

    assert result.outcome is RotationOutcome.SWITCHED
    assert (result.previous, result.target, result.current) == (0, 1, 1)
    assert session.current_index == 1
    assert rotator.state.failure_count == 0
    assert rotator.state.usage_count == 0
    assert not rotator.state.is_switching
    assert not rotator.state.is_system_busy


def test_single_account_rejects_switch_and_clears_failures() -> None:
    rotator, session = _rotator([0])
    rotator.state.failure_count = 3

    with pytest.raises(RotationOnlyOneAccountError):
        asyncio.run(rotator.switch_to_next())

    assert rotator.state.failure_count == 0
    assert session.calls == []
    assert session.current_index == 0


def test_failed_switch_falls_back_to_previous_account(caplog: Any) -> None:
    rotator, session = _rotator([0, 1], failing={1})
    rotator.state.failure_count = 3

    with caplog.at_level(logging.INFO):
        result = asyncio.run(rotator.switch_to_next())

    assert result.outcome is RotationOutcome.FALLBACK
    assert result.current == 0
    assert result.reason == "boom"
    assert session.calls == [1, 0]
    assert rotator.state.failure_count == 0
    assert not rotator.state.is_system_busy
    assert "rotation_fallback_succeeded account=0" in caplog.text


def test_failed_fallback_is_fatal_and_keeps_counters() -> None:
    rotator, session = _rotator([0, 1], failing={0, 1})
    rotator.state.failure_count = 3

    with pytest.raises(RotationFallbackFailedError) as excinfo:
        asyncio.run(rotator.switch_to_next())

    assert excinfo.value.target == 1
    assert excinfo.value.previous == 0
    assert session.calls == [1, 0]
    assert rotator.state.failure_count == 3
    assert not rotator.state.is_switching
    assert not rotator.state.is_system_busy


def test_switch_is_rejected_while_another_is_in_progress() -> None:
    rotator, session = _rotator([0, 1])
    rotator.state.is_switching = True
    rotator.state.is_system_busy = True

    with pytest.raises(RotationInProgressError):
        asyncio.run(rotator.switch_to_next())
    with pytest.raises(RotationInProgressError):
        asyncio.run(rotator.switch_to_specific(1))
    assert session.calls == []


def test_switch_to_specific_validates_target() -> None:
    rotator, session = _rotator([0, 2])

    with pytest.raises(RotationTargetError):
        asyncio.run(rotator.switch_to_specific(1))

    result = asyncio.run(rotator.switch_to_specific(2))
    assert result.outcome is RotationOutcome.SWITCHED
    assert session.current_index == 2


def test_failures_below_threshold_do_not_rotate() -> None:
    rotator, session = _rotator([0, 1], failure_threshold=3)

    notices = [
        asyncio.run(rotator.handle_request_failure(500, "boom")) for _ in range(2)
    ]

    assert notices == [None, None]
    assert rotator.state.failure_count == 2
    assert session.calls == []


def test_failure_threshold_triggers_one_rotation() -> None:
    rotator, session = _rotator([0, 1], failure_threshold=3)

    notices = [
        asyncio.run(rotator.handle_request_failure(500, "boom")) for _ in range(3)
    ]

    assert notices[:2] == [None, None]
    assert notices[2] == "Switched to account #1."
    assert session.calls == [1]
    assert rotator.state.failure_count == 0


def test_immediate_status_code_rotates_on_first_failure() -> None:
    rotator, session = _rotator(
        [0, 1], failure_threshold=3, immediate_switch_status_codes=frozenset({429})
    )

    notice = asyncio.run(rotator.handle_request_failure(429, "quota"))

    assert notice == "Switched to account #1."
    assert session.calls == [1]


def test_disabled_threshold_does_not_count_failures() -> None:
    rotator, session = _rotator(
        [0, 1], failure_threshold=0, immediate_switch_status_codes=frozenset()
    )

    for _ in range(5):
        assert asyncio.run(rotator.handle_request_failure(500, "boom")) is None

    assert rotator.state.failure_count == 0
    assert session.calls == []


def test_success_resets_failures_and_counts_usage() -> None:
    rotator, _ = _rotator([0, 1], switch_on_uses=2)
    rotator.state.failure_count = 2

    assert rotator.record_success(is_generative=True) is False
    assert rotator.state.failure_count == 0
    assert rotator.record_success(is_generative=False) is False
    assert rotator.record_success(is_generative=True) is True
    assert rotator.state.usage_count == 2


def test_usage_rotation_disabled_when_zero() -> None:
    rotator, _ = _rotator([0, 1], switch_on_uses=0)

    for _ in range(100):
        assert rotator.record_success(is_generative=True) is False
    assert rotator.state.usage_count == 0


def test_recovery_is_refused_while_switching() -> None:
    state = RotationState()
    assert state.try_begin_switch()
    assert not state.try_begin_recovery()
    assert not state.try_begin_switch()
    state.end_switch()
    assert state.try_begin_recovery()
    assert not state.try_begin_switch()
    state.end_recovery()
    assert not state.is_system_busy
