from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Set

import discord
from discord.ext import commands

from .config import AppConfig
from .core.manager import SessionManager
from .logging_utils import get_logger

_LOGGER = get_logger(__name__)

VOICE_STATE_OP = 4


class GatewayClient(Protocol):
    """What the session manager needs from the chat gateway connection."""

    @property
    def user_id(self) -> Optional[str]: ...

    @property
    def session_id(self) -> Optional[str]: ...

    def listen(
        self,
        on_ready: Callable[[], None],
        on_raw: Callable[[Dict[str, Any]], None],
    ) -> None: ...

    def send_voice_state(
        self,
        guild_id: str,
        channel_id: Optional[str],
        self_mute: bool = False,
        self_deaf: bool = False,
    ) -> None: ...

    def send_raw(self, payload: Dict[str, Any]) -> None: ...

    def has_guild(self, guild_id: Any) -> bool: ...

    def has_channel(self, channel_id: Any) -> bool: ...

    def is_connected(self, shard_id: int) -> bool: ...

    def region_hint(self, guild_id: str, channel_id: Optional[str]) -> Optional[str]: ...


def _snowflake(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class DiscordGateway:
    """Adapts a ``discord.py`` client to :class:`GatewayClient`.

    Raw voice events are only delivered when the client was built with
    ``enable_debug_events=True``.
    """

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot
        self._tasks: Set[asyncio.Task[None]] = set()

    @property
    def user_id(self) -> Optional[str]:
        user = self.bot.user
        return str(user.id) if user is not None else None

    @property
    def session_id(self) -> Optional[str]:
        ws = getattr(self.bot, "ws", None)
        return getattr(ws, "session_id", None)

    def listen(
        self,
        on_ready: Callable[[], None],
        on_raw: Callable[[Dict[str, Any]], None],
    ) -> None:
        async def ready_listener() -> None:
            on_ready()

        async def raw_listener(message: Any) -> None:
            if isinstance(message, (bytes, bytearray)):
                message = message.decode("utf-8", errors="replace")
            if not isinstance(message, str) or '"VOICE_' not in message:
                return
            try:
                packet = json.loads(message)
            except ValueError:
                _LOGGER.debug("Ignoring undecodable gateway frame")
                return
            if isinstance(packet, dict):
                on_raw(packet)

        self.bot.add_listener(ready_listener, "on_ready")
        self.bot.add_listener(raw_listener, "on_socket_raw_receive")

    def send_voice_state(
        self,
        guild_id: str,
        channel_id: Optional[str],
        self_mute: bool = False,
        self_deaf: bool = False,
    ) -> None:
        self.send_raw(
            {
                "op": VOICE_STATE_OP,
                "d": {
                    "guild_id": str(guild_id),
                    "channel_id": str(channel_id) if channel_id is not None else None,
                    "self_mute": self_mute,
                    "self_deaf": self_deaf,
                },
            }
        )

    def send_raw(self, payload: Dict[str, Any]) -> None:
        data = payload.get("d")
        guild_id = _snowflake(data.get("guild_id")) if isinstance(data, dict) else None
        ws = self._websocket_for(guild_id)
        if ws is None:
            _LOGGER.warning("Dropping gateway op %s: not connected to Discord", payload.get("op"))
            return
        self._spawn(ws.send_as_json(payload))

    def has_guild(self, guild_id: Any) -> bool:
        snowflake = _snowflake(guild_id)
        return snowflake is not None and self.bot.get_guild(snowflake) is not None

    def has_channel(self, channel_id: Any) -> bool:
        snowflake = _snowflake(channel_id)
        return snowflake is not None and self.bot.get_channel(snowflake) is not None

    def is_connected(self, shard_id: int) -> bool:
        get_shard = getattr(self.bot, "get_shard", None)
        if callable(get_shard):
            shard = get_shard(shard_id)
            return shard is not None and not shard.is_closed()
        return not self.bot.is_closed() and getattr(self.bot, "ws", None) is not None

    def region_hint(self, guild_id: str, channel_id: Optional[str]) -> Optional[str]:
        snowflake = _snowflake(channel_id)
        if snowflake is None:
            return None
        channel = self.bot.get_channel(snowflake)
        return getattr(channel, "rtc_region", None)

    def _websocket_for(self, guild_id: Optional[int]) -> Any:
        getter = getattr(self.bot, "_get_websocket", None)
        if callable(getter):
            return getter(guild_id)
        return getattr(self.bot, "ws", None)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _LOGGER.error("Failed to send gateway payload", exc_info=(type(exc), exc, exc.__traceback__))


class VoiceLinkBot(commands.Bot):
    def __init__(self, config: AppConfig) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.voice_states = True
        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=intents,
            enable_debug_events=True,
            shard_count=config.discord.shard_count,
        )
        self.config_data = config
        self.gateway = DiscordGateway(self)
        self.voice = SessionManager(
            self.gateway,
            config.nodes,
            config.manager,
            shard_count=config.discord.shard_count,
        )

    async def setup_hook(self) -> None:
        self.voice.start()
        _LOGGER.info("Started voice manager with %d nodes", len(self.voice.pool))

    async def on_ready(self) -> None:
        _LOGGER.info("Logged in as %s (%s)", self.user, self.user.id if self.user else "unknown")

    async def close(self) -> None:
        await self.voice.close()
        await super().close()


def create_bot(config: AppConfig) -> VoiceLinkBot:
    return VoiceLinkBot(config)


__all__ = ["GatewayClient", "DiscordGateway", "VoiceLinkBot", "create_bot"]
