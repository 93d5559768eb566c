from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from channel_relay.accounts.directory import AccountDirectory
from channel_relay.channel.messages import SwitchAccountCommand
from channel_relay.channel.registry import ConnectionRegistry, TransportUnavailableError

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True, frozen=True)
class SessionResult:
    ok: bool
    account_index: int
    error: str | None = None


class UpstreamSessionManager(Protocol):
    @property
    def current_index(self) -> int: ...

    async def ensure_channel_for(self, account_index: int) -> SessionResult: ...


class ChannelSessionManager:
    """Moves the relay onto one account's channel.

    The automation layer is asked to switch with an advisory command over the
    live channel; the move succeeds once a channel announcing the target
    account is registered. Channels bound to other accounts are then retired.
    """

    def __init__(
        self,
        *,
        registry: ConnectionRegistry,
        directory: AccountDirectory,
        connect_timeout_seconds: float,
        initial_index: int,
    ) -> None:
        self._registry = registry
        self._directory = directory
        self._connect_timeout_seconds = connect_timeout_seconds
        self._current_index = initial_index

    @property
    def current_index(self) -> int:
        return self._current_index

    async def ensure_channel_for(self, account_index: int) -> SessionResult:
        is_current = account_index == self._current_index
        channel = self._registry.channel_for(account_index, allow_unbound=is_current)
        if channel is not None and is_current:
            return SessionResult(ok=True, account_index=account_index)

        if channel is None:
            if self._registry.has_live_channel():
                command = SwitchAccountCommand(
                    account_index=account_index,
                    account_name=self._directory.name_of(account_index),
                )
                try:
                    await self._registry.send_to_first_live(command.to_wire())
                except TransportUnavailableError as exc:
                    logger.warning(
                        "session_switch_command_failed account=%d error=%s",
                        account_index,
                        exc,
                    )
            try:
                channel = await self._registry.wait_for_channel(
                    account_index,
                    self._connect_timeout_seconds,
                    allow_unbound=is_current,
                )
            except TransportUnavailableError as exc:
                logger.error(
                    "session_channel_unavailable account=%d error=%s",
                    account_index,
                    exc,
                )
                return SessionResult(
                    ok=False, account_index=account_index, error=str(exc)
                )

        await self._registry.retire_channels(keep=channel)
        previous = self._current_index
        self._current_index = account_index
        logger.info(
            "session_channel_ready account=%d previous=%d channel_id=%s",
            account_index,
            previous,
            channel.channel_id,
        )
        return SessionResult(ok=True, account_index=account_index)
