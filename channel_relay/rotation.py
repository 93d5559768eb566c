from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from channel_relay.accounts.directory import AccountDirectory
from channel_relay.channel.session import UpstreamSessionManager

logger = logging.getLogger("uvicorn.error")


class RotationOutcome(str, Enum):
    SWITCHED = "switched"
    FALLBACK = "fallback"


class RotationError(RuntimeError):
    pass


class RotationInProgressError(RotationError):
    pass


class RotationOnlyOneAccountError(RotationError):
    pass


class RotationTargetError(RotationError):
    pass


class RotationFallbackFailedError(RotationError):
    def __init__(self, *, target: int, previous: int, reason: str | None) -> None:
        self.target = target
        self.previous = previous
        self.reason = reason
        super().__init__(
            f"Switch to account {target} failed and fallback to account "
            f"{previous} also failed: {reason or 'unknown error'}"
        )


@dataclass(slots=True)
class RotationConfig:
    failure_threshold: int = 3
    switch_on_uses: int = 40
    immediate_switch_status_codes: frozenset[int] = field(
        default_factory=lambda: frozenset({429, 503})
    )


@dataclass(slots=True)
class RotationState:
    failure_count: int = 0
    usage_count: int = 0
    is_switching: bool = False
    is_system_busy: bool = False
    rotation_pending: bool = False

    def try_begin_switch(self) -> bool:
        if self.is_switching or self.is_system_busy:
            return False
        self.is_switching = True
        self.is_system_busy = True
        return True

    def end_switch(self) -> None:
        self.is_switching = False
        self.is_system_busy = False

    def try_begin_recovery(self) -> bool:
        if self.is_system_busy:
            return False
        self.is_system_busy = True
        return True

    def end_recovery(self) -> None:
        if not self.is_switching:
            self.is_system_busy = False

    def reset_counters(self) -> None:
        self.failure_count = 0
        self.usage_count = 0
        self.rotation_pending = False

    def take_pending_rotation(self) -> bool:
        pending = self.rotation_pending
        self.rotation_pending = False
        return pending


@dataclass(slots=True, frozen=True)
class RotationResult:
    outcome: RotationOutcome
    previous: int
    target: int
    current: int
    reason: str | None = None


def next_account_index(current: int, usable: list[int]) -> int:
    ordered = sorted(usable)
    if current not in ordered:
        return ordered[0]
    position = ordered.index(current)
    return ordered[(position + 1) % len(ordered)]


class AccountRotator:
    """Account rotation state machine.

    ``Ready -> Switching`` is only entered through ``RotationState.try_begin_switch``;
    a second trigger while switching is rejected, never queued.
    """

    def __init__(
        self,
        *,
        state: RotationState,
        config: RotationConfig,
        session: UpstreamSessionManager,
        directory: AccountDirectory,
    ) -> None:
        self.state = state
        self.config = config
        self._session = session
        self._directory = directory

    @property
    def current_index(self) -> int:
        return self._session.current_index

    async def switch_to_next(self) -> RotationResult:
        usable = self._directory.list_usable_indices()
        if len(usable) <= 1:
            self.state.failure_count = 0
            logger.warning("rotation_rejected reason=only_one_account")
            raise RotationOnlyOneAccountError(
                "Only one account is available, cannot switch."
            )
        if not self.state.try_begin_switch():
            logger.info("rotation_skipped reason=in_progress")
            raise RotationInProgressError("Switch already in progress.")
        try:
            previous = self._session.current_index
            target = next_account_index(previous, usable)
            return await self._move(previous=previous, target=target)
        finally:
            self.state.end_switch()

    async def switch_to_specific(self, target: int) -> RotationResult:
        if target not in self._directory.list_usable_indices():
            raise RotationTargetError(f"Account {target} is invalid or missing.")
        if not self.state.try_begin_switch():
            logger.info("rotation_skipped reason=in_progress target=%d", target)
            raise RotationInProgressError("Switch already in progress.")
        try:
            return await self._move(previous=self._session.current_index, target=target)
        finally:
            self.state.end_switch()

    async def _move(self, *, previous: int, target: int) -> RotationResult:
        logger.info("rotation_start previous=%d target=%d", previous, target)
        result = await self._session.ensure_channel_for(target)
        if result.ok:
            self.state.reset_counters()
            logger.info("rotation_switched account=%d", self._session.current_index)
            return RotationResult(
                outcome=RotationOutcome.SWITCHED,
                previous=previous,
                target=target,
                current=self._session.current_index,
            )

        logger.error(
            "rotation_target_failed target=%d error=%s", target, result.error
        )
        logger.warning("rotation_fallback_start account=%d", previous)
        fallback = await self._session.ensure_channel_for(previous)
        if not fallback.ok:
            logger.error(
                "rotation_fallback_failed target=%d previous=%d error=%s",
                target,
                previous,
                fallback.error,
            )
            raise RotationFallbackFailedError(
                target=target, previous=previous, reason=fallback.error
            )
        self.state.reset_counters()
        logger.info("rotation_fallback_succeeded account=%d", previous)
        return RotationResult(
            outcome=RotationOutcome.FALLBACK,
            previous=previous,
            target=target,
            current=self._session.current_index,
            reason=result.error,
        )

    def record_success(self, *, is_generative: bool) -> bool:
        """Account one delivered response; return True when a rotation is due."""
        if not is_generative:
            return False
        if self.state.failure_count > 0:
            logger.info(
                "rotation_failures_reset previous=%d", self.state.failure_count
            )
            self.state.failure_count = 0
        if self.config.switch_on_uses <= 0:
            return False
        self.state.usage_count += 1
        logger.info(
            "rotation_usage count=%d/%d account=%d",
            self.state.usage_count,
            self.config.switch_on_uses,
            self._session.current_index,
        )
        if self.state.usage_count < self.config.switch_on_uses:
            return False
        self.state.rotation_pending = True
        return True

    async def handle_request_failure(self, status: int, message: str) -> str | None:
        """Count a failed request and rotate when due.

        Returns a client-facing notice describing any rotation that ran.
        """
        threshold = self.config.failure_threshold
        if threshold > 0:
            self.state.failure_count += 1
            logger.warning(
                "rotation_failure_recorded count=%d/%d status=%d account=%d",
                self.state.failure_count,
                threshold,
                status,
                self._session.current_index,
            )
        immediate = status in self.config.immediate_switch_status_codes
        threshold_reached = threshold > 0 and self.state.failure_count >= threshold
        if not (immediate or threshold_reached):
            return None

        if immediate:
            logger.warning("rotation_triggered reason=status status=%d", status)
        else:
            logger.warning(
                "rotation_triggered reason=failure_threshold count=%d",
                self.state.failure_count,
            )
        try:
            result = await self.switch_to_next()
        except RotationInProgressError:
            return None
        except RotationOnlyOneAccountError:
            return "Account switch skipped: only one account is available."
        except RotationFallbackFailedError as exc:
            logger.error("rotation_fatal error=%s", exc)
            return (
                "Account switch and fallback both failed; "
                "the upstream channel may be unavailable."
            )
        if result.outcome is RotationOutcome.FALLBACK:
            return (
                f"Account switch failed; fell back to account #{result.current}."
            )
        return f"Switched to account #{result.current}."
