from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import pytest

from voicelink.config import ManagerConfig, NodeConfig
from voicelink.core.node import BackendNode, NodeState
from voicelink.core.scheduler import Scheduler


class FakeGateway:
    def __init__(self, user_id: str = "1000", session_id: str = "gateway-session") -> None:
        self.user_id = user_id
        self.session_id = session_id
        self.voice_states: List[Tuple[str, Optional[str], bool, bool]] = []
        self.voice_state_times: List[float] = []
        self.raw: List[Dict[str, Any]] = []
        self.guilds: Set[str] = set()
        self.channels: Set[str] = set()
        self.connected_shards: Set[int] = {0}
        self.regions: Dict[str, str] = {}
        self.on_ready: Optional[Callable[[], None]] = None
        self.on_raw: Optional[Callable[[Dict[str, Any]], None]] = None

    def listen(self, on_ready: Callable[[], None], on_raw: Callable[[Dict[str, Any]], None]) -> None:
        self.on_ready = on_ready
        self.on_raw = on_raw

    def send_voice_state(
        self,
        guild_id: str,
        channel_id: Optional[str],
        self_mute: bool = False,
        self_deaf: bool = False,
    ) -> None:
        self.voice_states.append((guild_id, channel_id, self_mute, self_deaf))
        self.voice_state_times.append(asyncio.get_running_loop().time())

    def send_raw(self, payload: Dict[str, Any]) -> None:
        self.raw.append(payload)

    def has_guild(self, guild_id: Any) -> bool:
        return str(guild_id) in self.guilds

    def has_channel(self, channel_id: Any) -> bool:
        return str(channel_id) in self.channels

    def is_connected(self, shard_id: int) -> bool:
        return shard_id in self.connected_shards

    def region_hint(self, guild_id: str, channel_id: Optional[str]) -> Optional[str]:
        return self.regions.get(str(channel_id))


class RecordingNode(BackendNode):
    """A node that records outbound payloads instead of writing to a socket."""

    def __init__(
        self,
        host: str,
        *,
        scheduler: Scheduler,
        region: Optional[str] = None,
        load: float = 0.0,
        connected: bool = True,
    ) -> None:
        super().__init__(NodeConfig(host=host, region=region), scheduler=scheduler)
        self.sent: List[Dict[str, Any]] = []
        if connected:
            self._state = NodeState.CONNECTED
        self.set_load(load)

    def set_load(self, load: float) -> None:
        self.stats.update({"cpu": {"cores": 1, "systemLoad": load / 100}})

    def send(self, payload: Dict[str, Any]) -> None:
        self.sent.append(dict(payload))

    def ops(self, guild_id: Optional[str] = None) -> List[str]:
        return [
            payload["op"]
            for payload in self.sent
            if guild_id is None or payload.get("guildId") == guild_id
        ]

    def go_down(self) -> None:
        self._handle_close()
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def manager_config() -> ManagerConfig:
    return ManagerConfig(
        failover_rate_seconds=0.05,
        failover_limit=1,
        handshake_timeout_seconds=0.1,
    )


@pytest.fixture
def make_node() -> Callable[..., RecordingNode]:
    def factory(host: str, scheduler: Scheduler, **kwargs: Any) -> RecordingNode:
        return RecordingNode(host, scheduler=scheduler, **kwargs)

    return factory
