from __future__ import annotations

import time
from collections import deque
from typing import TYPE_CHECKING, Any, Deque, Dict, Mapping, Optional

from ..logging_utils import get_logger
from .errors import SessionDisconnected, TrackException
from .events import EventEmitter, SessionEvent
from .node import BackendNode, NodeState
from .scheduler import Scheduler

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..gateway import GatewayClient
    from .manager import SessionManager

_LOGGER = get_logger(__name__)

REPLACED = "REPLACED"


def _wire_options(options: Mapping[str, Any]) -> Dict[str, Any]:
    """Translate ``start_time`` style keyword options into node field names."""

    wire: Dict[str, Any] = {}
    for key, value in options.items():
        if value is None:
            continue
        head, *rest = key.split("_")
        wire[head + "".join(part.title() for part in rest)] = value
    return wire


class Session(EventEmitter):
    """Playback state for one guild, bound to exactly one voice node.

    Every command goes through :meth:`enqueue`, which transmits at most one
    command per loop iteration so the node always sees commands in the order
    they were issued. While the session is being moved to another node the
    queue is held and released behind the new voice handshake.
    """

    def __init__(
        self,
        guild_id: str,
        *,
        channel_id: Optional[str],
        node: BackendNode,
        gateway: GatewayClient,
        scheduler: Scheduler,
        manager: Optional[SessionManager] = None,
        options: Optional[Dict[str, Any]] = None,
        history_size: int = 50,
    ) -> None:
        super().__init__()
        self.guild_id = guild_id
        self.channel_id = channel_id
        self.node = node
        self.manager = manager
        self.options: Dict[str, Any] = dict(options or {})
        self.ready = False
        self.playing = False
        self.paused = False
        self.volume: Optional[int] = None
        self.track: Optional[str] = None
        self.last_track: Optional[str] = None
        self.play_options: Dict[str, Any] = {}
        self.state: Dict[str, Any] = {}
        self.session_id: Optional[str] = None
        self.event: Optional[Dict[str, Any]] = None
        self.migrating = False
        self.destroyed = False
        self.created_at = time.time()
        self.timestamp = time.monotonic()
        self.sent: Deque[Dict[str, Any]] = deque(maxlen=history_size)
        self._gateway = gateway
        self._scheduler = scheduler
        self._send_queue: Deque[Dict[str, Any]] = deque()
        self._flush_pending = False

    def __repr__(self) -> str:
        return (
            f"<Session guild_id={self.guild_id!r} channel_id={self.channel_id!r} "
            f"node={self.node.host!r} playing={self.playing}>"
        )

    @property
    def position(self) -> int:
        return int(self.state.get("position") or 0)

    @property
    def queued(self) -> int:
        return len(self._send_queue)

    def get_timestamp(self) -> int:
        """Milliseconds since the current track started playing."""

        return int((time.monotonic() - self.timestamp) * 1000)

    def enqueue(self, command: Dict[str, Any]) -> None:
        self._send_queue.append(command)
        self._flush()

    def _flush(self) -> None:
        if self._flush_pending or self.migrating or not self._send_queue:
            return
        command = self._send_queue.popleft()
        self.sent.append(command)
        self.node.send(command)
        self._flush_pending = True
        self._scheduler.defer(self._check_send_queue)

    def _check_send_queue(self) -> None:
        self._flush_pending = False
        self._flush()

    def hold(self) -> None:
        self.migrating = True

    def connect(self, session_id: Optional[str], event: Dict[str, Any]) -> None:
        self.session_id = session_id
        self.event = event
        self.emit(SessionEvent.CONNECT)
        self._send_queue.appendleft(
            {
                "op": "voiceUpdate",
                "guildId": self.guild_id,
                "sessionId": session_id,
                "event": event,
            }
        )
        self.migrating = False
        self._flush()
        self._scheduler.defer(self._mark_ready)

    def _mark_ready(self) -> None:
        if self.destroyed:
            return
        self.ready = True
        self.emit(SessionEvent.READY)

    def disconnect(self, error: Optional[BaseException] = None) -> None:
        self.playing = False
        self.ready = False
        self.destroyed = True
        self.migrating = False
        self._send_queue.clear()
        command = {"op": "disconnect", "guildId": self.guild_id}
        self.sent.append(command)
        self.node.send(command)
        reason: Any = error
        if error is not None and not isinstance(error, SessionDisconnected):
            reason = SessionDisconnected(self.guild_id, error)
        self.emit(SessionEvent.DISCONNECT, reason)

    def play(self, track: str, **options: Any) -> None:
        self.last_track = self.track
        self.track = track
        self.play_options = options

        if not self.migrating and self.node.state is NodeState.DRAINING:
            self.state["position"] = 0
            if self.manager is not None:
                _LOGGER.info(
                    "Voice node %s is draining, moving guild %s before playing",
                    self.node.host,
                    self.guild_id,
                )
                self.manager.switch_node(self)
                return

        payload: Dict[str, Any] = {"op": "play", "guildId": self.guild_id, "track": track}
        payload.update(_wire_options(options))
        self.enqueue(payload)
        self.playing = True
        self.paused = bool(options.get("pause", False))
        self.timestamp = time.monotonic()

    def stop(self) -> None:
        self.enqueue({"op": "stop", "guildId": self.guild_id})
        self.playing = False
        self.last_track = self.track
        self.track = None

    def pause(self, pause: bool = True) -> None:
        self.enqueue({"op": "pause", "guildId": self.guild_id, "pause": pause})
        self.paused = pause

    def resume(self) -> None:
        self.pause(False)

    def seek(self, position: int) -> None:
        self.enqueue({"op": "seek", "guildId": self.guild_id, "position": int(position)})

    def set_volume(self, volume: int) -> None:
        self.enqueue({"op": "volume", "guildId": self.guild_id, "volume": int(volume)})
        self.volume = int(volume)

    def state_update(self, state: Dict[str, Any]) -> None:
        self.state = state

    def on_track_end(self, message: Dict[str, Any]) -> None:
        if message.get("reason") != REPLACED:
            self.playing = False
            self.last_track = self.track
            self.track = None
        self.emit(SessionEvent.END, message)

    def on_track_exception(self, message: Dict[str, Any]) -> None:
        error = TrackException(self.guild_id, message)
        _LOGGER.warning("%s", error)
        self.emit(SessionEvent.ERROR, error)

    def on_track_stuck(self, message: Dict[str, Any]) -> None:
        _LOGGER.warning(
            "Track stuck in guild %s for %sms, stopping playback",
            self.guild_id,
            message.get("thresholdMs", "?"),
        )
        self.stop()
        self.emit(SessionEvent.STUCK, message)
        self._scheduler.defer(self.emit, SessionEvent.END, message)

    def switch_channel(self, channel_id: Optional[str], reactive: bool = False) -> None:
        if self.channel_id == channel_id:
            return
        self.channel_id = channel_id
        if reactive:
            self.update_voice_state(channel_id)

    def update_voice_state(
        self, channel_id: Optional[str], self_mute: bool = False, self_deaf: bool = False
    ) -> None:
        self._gateway.send_voice_state(
            self.guild_id, channel_id, self_mute=self_mute, self_deaf=self_deaf
        )


__all__ = ["Session"]
