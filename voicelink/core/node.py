from __future__ import annotations

import asyncio
import json
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, Mapping, Optional

import aiohttp

from ..config import NodeConfig
from ..logging_utils import get_logger
from .errors import NodeError
from .events import EventEmitter, NodeEvent
from .scheduler import Scheduler

_LOGGER = get_logger(__name__)

MAX_BACKOFF_STEPS = 5


class NodeState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DRAINING = "draining"


@dataclass
class NodeStats:
    players: int = 0
    playing_players: int = 0
    uptime: int = 0
    cpu: Optional[Dict[str, float]] = None
    memory: Optional[Dict[str, int]] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def load(self) -> float:
        if not self.cpu:
            return 0.0
        cores = self.cpu.get("cores") or 0
        if not cores:
            return 0.0
        return float(self.cpu.get("systemLoad", 0.0)) / cores * 100

    def update(self, payload: Mapping[str, Any]) -> None:
        self.raw = dict(payload)
        self.players = int(payload.get("players", self.players) or 0)
        self.playing_players = int(payload.get("playingPlayers", self.playing_players) or 0)
        self.uptime = int(payload.get("uptime", self.uptime) or 0)
        cpu = payload.get("cpu")
        if isinstance(cpu, Mapping):
            self.cpu = dict(cpu)
        memory = payload.get("memory")
        if isinstance(memory, Mapping):
            self.memory = dict(memory)


class BackendNode(EventEmitter):
    """Persistent WebSocket connection to a single audio node.

    The node emits ``READY`` when the socket opens, ``DISCONNECT`` once when a
    live socket closes, ``MESSAGE`` for every parsed inbound payload and
    ``ERROR`` for transient failures. Reconnects are timer driven and never
    block the caller.
    """

    def __init__(
        self,
        config: NodeConfig,
        *,
        scheduler: Scheduler,
        user_id: Optional[str] = None,
        shard_count: int = 1,
    ) -> None:
        super().__init__()
        self.host = config.host
        self.port = config.port
        self.address = f"ws://{self.host}:{self.port}"
        self.region = config.region
        self.password = config.password
        self.reconnect_timeout = config.reconnect_timeout_seconds
        self.user_id = user_id
        self.shard_count = shard_count
        self.draining = False
        self.retries = 0
        self.stats = NodeStats()
        self._scheduler = scheduler
        self._state = NodeState.DISCONNECTED
        self._http: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._connect_task: Optional[asyncio.Task[None]] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._outgoing: Deque[str] = deque()
        self._writer_task: Optional[asyncio.Task[None]] = None
        self._destroyed = False

    def __repr__(self) -> str:
        return f"<BackendNode host={self.host!r} region={self.region!r} state={self.state.value}>"

    @property
    def state(self) -> NodeState:
        if self.draining and self._state is NodeState.CONNECTED:
            return NodeState.DRAINING
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is NodeState.CONNECTED

    @property
    def load(self) -> float:
        return self.stats.load

    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": self.password,
            "Num-Shards": str(self.shard_count),
            "User-Id": str(self.user_id or ""),
        }

    def retry_interval(self) -> float:
        steps = min(self.retries - 1, MAX_BACKOFF_STEPS)
        return float((steps + 5) ** 2)

    def connect(self) -> None:
        if self._destroyed:
            raise NodeError(f"Voice node {self.host} has been destroyed", host=self.host)
        if self._connect_task is not None and not self._connect_task.done():
            return
        self._state = NodeState.CONNECTING
        self._connect_task = self._scheduler.spawn(
            self._run(), name=f"voicelink-node-{self.host}"
        )

    def drain(self) -> None:
        if not self.draining:
            _LOGGER.info("Voice node %s is draining", self.host)
        self.draining = True

    def undrain(self) -> None:
        self.draining = False

    def send(self, payload: Mapping[str, Any]) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            _LOGGER.debug("Dropping %s for %s: socket is not open", payload.get("op"), self.host)
            return
        try:
            data = json.dumps(payload)
        except (TypeError, ValueError) as exc:
            self.emit(NodeEvent.ERROR, NodeError(f"Unable to serialise payload: {exc}", host=self.host))
            return

        self._outgoing.append(data)
        if self._writer_task is None or self._writer_task.done():
            self._writer_task = self._scheduler.spawn(self._write(ws))

    def destroy(self) -> None:
        self._scheduler.spawn(self._shutdown(self._detach()))

    async def close(self) -> None:
        """Destroy the node and wait until its socket and HTTP session are closed."""

        task = self._connect_task
        ws = self._detach()
        if task is not None and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)
        await self._shutdown(ws)

    def _detach(self) -> Optional[aiohttp.ClientWebSocketResponse]:
        self._destroyed = True
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        ws, self._ws = self._ws, None
        self._outgoing.clear()
        self._state = NodeState.DISCONNECTED
        task = self._connect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        return ws

    async def _shutdown(self, ws: Optional[aiohttp.ClientWebSocketResponse]) -> None:
        if ws is not None and not ws.closed:
            await ws.close()
        if self._http is not None and not self._http.closed:
            await self._http.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._http and not self._http.closed:
            return self._http
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self.reconnect_timeout)
        self._http = aiohttp.ClientSession(timeout=timeout)
        return self._http

    async def _run(self) -> None:
        session = await self._get_session()
        try:
            ws = await session.ws_connect(self.address, headers=self.headers(), heartbeat=30.0)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            _LOGGER.warning("Unable to connect to voice node %s: %s", self.address, exc)
            self.emit(NodeEvent.ERROR, NodeError(f"Unable to connect to {self.address}: {exc}", host=self.host))
            self._handle_close()
            return

        if self._destroyed:
            await ws.close()
            return

        self._handle_open(ws)
        try:
            await self._read(ws)
        finally:
            if self._ws is ws:
                self._handle_close()

    async def _read(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for message in ws:
            if message.type == aiohttp.WSMsgType.TEXT:
                self._handle_message(message.data)
            elif message.type == aiohttp.WSMsgType.BINARY:
                self._handle_message(message.data.decode("utf-8", errors="replace"))
            elif message.type == aiohttp.WSMsgType.ERROR:
                self.emit(NodeEvent.ERROR, NodeError(f"Socket error: {ws.exception()}", host=self.host))
        _LOGGER.info("Voice node %s closed the connection (code %s)", self.host, ws.close_code)

    async def _write(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while self._outgoing and self._ws is ws:
            data = self._outgoing.popleft()
            try:
                await ws.send_str(data)
            except (aiohttp.ClientError, ConnectionError) as exc:
                self._outgoing.clear()
                self.emit(NodeEvent.ERROR, NodeError(f"Unable to send payload: {exc}", host=self.host))
                return

    def _handle_open(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
            _LOGGER.info("Reconnected to voice node %s after %d attempts", self.host, self.retries)
        else:
            _LOGGER.info("Connected to voice node %s", self.address)

        self._ws = ws
        self._state = NodeState.CONNECTED
        self.retries = 0
        self.emit(NodeEvent.READY)

    def _handle_close(self) -> None:
        previous = self._state
        self._ws = None
        self._outgoing.clear()
        self._state = NodeState.DISCONNECTED
        if self._destroyed or self._reconnect_handle is not None:
            return

        if previous is NodeState.CONNECTED:
            self.emit(NodeEvent.DISCONNECT)
        self._reconnect_handle = self._scheduler.call_later(self.reconnect_timeout, self._reconnect)

    def _reconnect(self) -> None:
        interval = self.retry_interval()
        self._reconnect_handle = self._scheduler.call_later(interval, self._reconnect)
        self.retries += 1
        _LOGGER.info(
            "Reconnecting to voice node %s (attempt %d, next retry in %.0fs)",
            self.host,
            self.retries,
            interval,
        )
        self.connect()

    def _handle_message(self, raw: str) -> None:
        try:
            data = json.loads(raw)
        except ValueError:
            self.emit(NodeEvent.ERROR, NodeError("Unable to parse websocket message", host=self.host))
            return
        if not isinstance(data, dict):
            self.emit(NodeEvent.ERROR, NodeError("Unexpected websocket payload shape", host=self.host))
            return

        if data.get("op") == "stats":
            self.stats.update(data)

        self.emit(NodeEvent.MESSAGE, data)


__all__ = ["BackendNode", "NodeState", "NodeStats"]
