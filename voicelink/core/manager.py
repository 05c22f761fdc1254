from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, Optional, Sequence

from ..config import ManagerConfig, NodeConfig
from ..logging_utils import get_logger
from .errors import HandshakeTimeout, NoAvailableNode, SessionDisconnected, VoiceLinkError
from .events import NodeEvent, SessionEvent
from .node import BackendNode
from .pool import NodePool
from .scheduler import Scheduler
from .session import Session

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..gateway import GatewayClient

_LOGGER = get_logger(__name__)

VOICE_STATE_OP = 4

RESOLVED = "resolved"
REJECTED = "rejected"
TIMED_OUT = "timed_out"

NodeMessageHandler = Callable[[BackendNode, Dict[str, Any]], None]


@dataclass
class PendingSession:
    """A join handshake waiting for the gateway's voice server update."""

    guild_id: str
    channel_id: Optional[str]
    options: Dict[str, Any]
    node: BackendNode
    future: asyncio.Future[Session]
    session: Optional[Session] = None
    timeout_handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)
    outcome: Optional[str] = None
    watched: bool = False


class SessionManager:
    """Registry of voice sessions and driver of the join handshake.

    A join sends ``connect`` to the chosen node, waits for the gateway to
    deliver a voice server update, forwards it to the node as ``voiceUpdate``
    and resolves once the session reports ready. Sessions on a node that goes
    away are re-homed through the pool's rate-limited failover queue.
    """

    def __init__(
        self,
        gateway: GatewayClient,
        nodes: Sequence[NodeConfig],
        config: Optional[ManagerConfig] = None,
        *,
        shard_count: int = 1,
        scheduler: Optional[Scheduler] = None,
        session_factory: Callable[..., Session] = Session,
    ) -> None:
        self.gateway = gateway
        self.config = config or ManagerConfig()
        self._scheduler = scheduler or Scheduler()
        self.pool = NodePool(
            self.config,
            scheduler=self._scheduler,
            nodes=nodes,
            shard_count=shard_count,
        )
        self.sessions: Dict[str, Session] = {}
        self.pending: Dict[str, PendingSession] = {}
        self._migrations: Dict[str, Session] = {}
        self._voice_session_ids: Dict[str, str] = {}
        self._session_factory = session_factory
        self._node_handlers: Dict[str, NodeMessageHandler] = {
            "validationReq": self._handle_validation_request,
            "isConnectedReq": self._handle_connected_request,
            "sendWS": self._handle_gateway_relay,
            "playerUpdate": self._handle_player_update,
            "event": self._handle_player_event,
        }

        self.pool.on(NodeEvent.DISCONNECT, self._on_node_disconnect)
        self.pool.on(NodeEvent.MESSAGE, self._on_node_message)
        self.pool.on(NodeEvent.ERROR, self._on_node_error)
        gateway.listen(self.on_gateway_ready, self.on_raw)

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self.sessions.values()))

    def __len__(self) -> int:
        return len(self.sessions)

    def get(self, guild_id: Any) -> Optional[Session]:
        return self.sessions.get(str(guild_id))

    def start(self) -> None:
        self.pool.start(self.gateway.user_id)

    async def close(self) -> None:
        for pending in list(self.pending.values()):
            self._settle(
                pending,
                error=SessionDisconnected(pending.guild_id, "voice manager closed"),
                outcome=REJECTED,
            )
        await self.pool.close()
        await self._scheduler.close()

    def add_node(self, config: NodeConfig) -> BackendNode:
        return self.pool.add_node(config)

    def remove_node(self, host: str) -> Optional[BackendNode]:
        return self.pool.remove_node(host)

    def drain_node(self, host: str, *, migrate: bool = False) -> BackendNode:
        node = self.pool.get(host)
        if node is None:
            raise KeyError(f"Unknown voice node '{host}'")
        node.drain()
        if migrate:
            for session in self:
                if session.node is node:
                    self.pool.queue_failover(partial(self.switch_node, session, False))
        return node

    async def join(
        self,
        guild_id: Any,
        channel_id: Any,
        options: Optional[Dict[str, Any]] = None,
        session: Optional[Session] = None,
    ) -> Session:
        guild_id = str(guild_id)
        channel_id = str(channel_id) if channel_id is not None else None
        options = dict(options or {})

        if session is not None and session.destroyed:
            raise SessionDisconnected(guild_id, "session was closed before it could rejoin")

        active = session or self.sessions.get(guild_id) or self._migrations.get(guild_id)
        if active is not None and active.channel_id != channel_id:
            active.switch_channel(channel_id, reactive=True)
            return active

        existing = self.pending.get(guild_id)
        if session is None and active is not None:
            # A migrating session is still the guild's session; callers share it.
            if active.migrating and existing is None:
                return active
            if active.ready and not active.migrating:
                return active

        if existing is not None:
            if session is not None and existing.session is None:
                existing.session = session
            return await asyncio.shield(existing.future)

        hint = options.get("region") or self.gateway.region_hint(guild_id, channel_id)
        region = self.pool.region_for(hint)
        node = self.pool.select_node(region)
        if node is None:
            raise NoAvailableNode(region)

        pending = PendingSession(
            guild_id=guild_id,
            channel_id=channel_id,
            options=options,
            node=node,
            future=asyncio.get_running_loop().create_future(),
            session=session,
        )
        pending.timeout_handle = self._scheduler.call_later(
            self.config.handshake_timeout_seconds, self._expire_pending, pending
        )
        self.pending[guild_id] = pending
        _LOGGER.debug("Joining guild %s channel %s through voice node %s", guild_id, channel_id, node.host)
        node.send({"op": "connect", "guildId": guild_id, "channelId": channel_id})

        return await asyncio.shield(pending.future)

    def leave(self, guild_id: Any) -> None:
        guild_id = str(guild_id)
        session = self.sessions.pop(guild_id, None) or self._migrations.pop(guild_id, None)
        if session is None:
            return

        pending = self.pending.get(guild_id)
        if pending is not None and pending.session is session:
            if pending.node is not session.node:
                pending.node.send({"op": "disconnect", "guildId": guild_id})
            self._settle(
                pending,
                error=SessionDisconnected(guild_id, "left during handshake"),
                outcome=REJECTED,
            )
        session.disconnect()

    def switch_node(self, session: Session, leave: bool = False) -> None:
        guild_id = session.guild_id
        if session.migrating or session.destroyed:
            _LOGGER.debug("Guild %s is already moving between voice nodes", guild_id)
            return

        track = session.track
        position = session.position + self.config.resume_offset_ms

        end_listeners = session.listeners(SessionEvent.END)
        for listener in end_listeners:
            session.off(SessionEvent.END, listener)

        def restore_end_listeners(*_: Any) -> None:
            for listener in end_listeners:
                session.on(SessionEvent.END, listener)

        session.once(SessionEvent.RECONNECT, restore_end_listeners)

        if self.sessions.get(guild_id) is session:
            del self.sessions[guild_id]
        self._migrations[guild_id] = session
        session.playing = False
        session.hold()

        old_node = session.node
        _LOGGER.info("Failing over guild %s from voice node %s", guild_id, old_node.host)
        if leave:
            session.update_voice_state(None)
        else:
            old_node.send({"op": "disconnect", "guildId": guild_id})

        self._scheduler.defer(self._rejoin, session, track, position, restore_end_listeners)

    def _rejoin(
        self,
        session: Session,
        track: Optional[str],
        position: int,
        restore_end_listeners: Callable[..., None],
    ) -> None:
        self._scheduler.spawn(
            self._resume(session, track, position, restore_end_listeners),
            name=f"voicelink-rehome-{session.guild_id}",
        )

    async def _resume(
        self,
        session: Session,
        track: Optional[str],
        position: int,
        restore_end_listeners: Callable[..., None],
    ) -> None:
        guild_id = session.guild_id
        try:
            rejoined = await self.join(guild_id, session.channel_id, session.options, session=session)
            if rejoined is not session:
                raise SessionDisconnected(guild_id, "another session took over the guild")
        except VoiceLinkError as exc:
            if self._migrations.get(guild_id) is session:
                del self._migrations[guild_id]
            session.off(SessionEvent.RECONNECT, restore_end_listeners)
            restore_end_listeners()
            if not session.destroyed:
                _LOGGER.warning("Unable to move guild %s to another voice node: %s", guild_id, exc)
                session.disconnect(exc)
            return

        if self._migrations.get(guild_id) is session:
            del self._migrations[guild_id]
        if session.destroyed:
            return

        if track is not None and session.track == track:
            session.play(
                track,
                start_time=position,
                volume=session.volume,
                pause=session.paused or None,
            )
        self.sessions[guild_id] = session
        session.emit(SessionEvent.RECONNECT)
        _LOGGER.info("Re-homed guild %s onto voice node %s", guild_id, session.node.host)

    def on_gateway_ready(self) -> None:
        sessions = list(self.sessions.values())
        if sessions:
            _LOGGER.info("Gateway ready, re-synchronising %d voice sessions", len(sessions))
        for session in sessions:
            self.pool.queue_failover(partial(self.switch_node, session, False))

    def on_raw(self, packet: Dict[str, Any]) -> None:
        event_type = packet.get("t")
        data = packet.get("d")
        if not isinstance(data, dict):
            return
        if event_type == "VOICE_SERVER_UPDATE":
            self._on_voice_server_update(data)
        elif event_type == "VOICE_STATE_UPDATE":
            self._on_voice_state_update(data)

    def _on_voice_server_update(self, data: Dict[str, Any]) -> None:
        guild_id = str(data.get("guild_id"))
        pending = self.pending.get(guild_id)
        if pending is not None and pending.timeout_handle is not None:
            pending.timeout_handle.cancel()
            pending.timeout_handle = None

        session = self.sessions.get(guild_id)
        if session is None and pending is None:
            _LOGGER.debug("Ignoring voice server update for idle guild %s", guild_id)
            return

        if pending is not None:
            if pending.session is not None and pending.session.destroyed:
                _LOGGER.debug("Guild %s left before its voice server update arrived", guild_id)
                pending.node.send({"op": "disconnect", "guildId": guild_id})
                self._settle(
                    pending,
                    error=SessionDisconnected(guild_id, "left during handshake"),
                    outcome=REJECTED,
                )
                return
            session = pending.session or session or self._create_session(pending)
            pending.session = session
            session.node = pending.node
            if pending.channel_id is not None:
                session.channel_id = pending.channel_id
            if not pending.watched:
                pending.watched = True
                self._watch_handshake(session, pending)

        assert session is not None
        self.sessions[guild_id] = session
        session_id = (
            self._voice_session_ids.get(guild_id)
            or data.get("session_id")
            or self.gateway.session_id
        )
        session.connect(
            session_id,
            {
                "endpoint": data.get("endpoint"),
                "guild_id": guild_id,
                "token": data.get("token"),
            },
        )

    def _on_voice_state_update(self, data: Dict[str, Any]) -> None:
        user_id = data.get("user_id")
        if user_id is None or str(user_id) != str(self.gateway.user_id):
            return
        if data.get("guild_id") is None:
            return

        guild_id = str(data["guild_id"])
        if data.get("session_id"):
            self._voice_session_ids[guild_id] = str(data["session_id"])

        session = self.sessions.get(guild_id)
        if session is None:
            return

        channel_id = data.get("channel_id")
        if channel_id is None:
            _LOGGER.info("Disconnected from voice in guild %s, closing its session", guild_id)
            del self.sessions[guild_id]
            session.disconnect()
            return

        if session.channel_id != str(channel_id):
            session.switch_channel(str(channel_id), reactive=True)

    def _create_session(self, pending: PendingSession) -> Session:
        return self._session_factory(
            pending.guild_id,
            channel_id=pending.channel_id,
            node=pending.node,
            gateway=self.gateway,
            scheduler=self._scheduler,
            manager=self,
            options=pending.options,
            history_size=self.config.history_size,
        )

    def _watch_handshake(self, session: Session, pending: PendingSession) -> None:
        def on_ready() -> None:
            session.off(SessionEvent.DISCONNECT, on_disconnect)
            self._settle(pending, result=session, outcome=RESOLVED)

        def on_disconnect(reason: Any = None) -> None:
            session.off(SessionEvent.READY, on_ready)
            if self.sessions.get(pending.guild_id) is session:
                del self.sessions[pending.guild_id]
            error = reason if isinstance(reason, BaseException) else SessionDisconnected(pending.guild_id, reason)
            self._settle(pending, error=error, outcome=REJECTED)

        session.once(SessionEvent.READY, on_ready)
        session.once(SessionEvent.DISCONNECT, on_disconnect)

    def _expire_pending(self, pending: PendingSession) -> None:
        if pending.outcome is not None:
            return
        pending.timeout_handle = None
        _LOGGER.warning(
            "No voice server update for guild %s within %.1fs, releasing it on voice node %s",
            pending.guild_id,
            self.config.handshake_timeout_seconds,
            pending.node.host,
        )
        pending.node.send({"op": "disconnect", "guildId": pending.guild_id})
        self._settle(
            pending,
            error=HandshakeTimeout(pending.guild_id, self.config.handshake_timeout_seconds),
            outcome=TIMED_OUT,
        )

    def _settle(
        self,
        pending: PendingSession,
        *,
        outcome: str,
        result: Optional[Session] = None,
        error: Optional[BaseException] = None,
    ) -> bool:
        if pending.outcome is not None:
            return False
        pending.outcome = outcome
        if pending.timeout_handle is not None:
            pending.timeout_handle.cancel()
            pending.timeout_handle = None
        if self.pending.get(pending.guild_id) is pending:
            del self.pending[pending.guild_id]

        if not pending.future.done():
            if error is not None:
                pending.future.set_exception(error)
            else:
                pending.future.set_result(result)  # type: ignore[arg-type]
        return True

    def _on_node_disconnect(self, node: BackendNode) -> None:
        bound = [session for session in self if session.node is node]
        if not bound:
            return
        _LOGGER.warning(
            "Voice node %s went away, failing over %d sessions", node.host, len(bound)
        )
        for session in bound:
            self.pool.queue_failover(partial(self.switch_node, session, True))

    def _on_node_error(self, node: BackendNode, error: Any) -> None:
        _LOGGER.warning("Voice node %s reported an error: %s", node.host, error)

    def _on_node_message(self, node: BackendNode, message: Dict[str, Any]) -> None:
        op = message.get("op")
        if not op or op == "stats":
            return
        handler = self._node_handlers.get(op)
        if handler is None:
            _LOGGER.debug("Ignoring unknown op %r from voice node %s", op, node.host)
            return
        handler(node, message)

    def _handle_validation_request(self, node: BackendNode, message: Dict[str, Any]) -> None:
        guild_id = message.get("guildId")
        channel_id = message.get("channelId")
        payload: Dict[str, Any] = {"op": "validationRes", "guildId": guild_id}

        guild_valid = self.gateway.has_guild(guild_id) if guild_id else True
        channel_valid = True
        if channel_id:
            channel_valid = self.gateway.has_channel(channel_id)
            if channel_valid:
                payload["channelId"] = channel_id

        payload["valid"] = guild_valid and channel_valid
        node.send(payload)

    def _handle_connected_request(self, node: BackendNode, message: Dict[str, Any]) -> None:
        try:
            shard_id = int(message.get("shardId", 0))
        except (TypeError, ValueError):
            _LOGGER.warning("Voice node %s sent an invalid shard id: %r", node.host, message.get("shardId"))
            return
        node.send(
            {
                "op": "isConnectedRes",
                "shardId": shard_id,
                "connected": bool(self.gateway.is_connected(shard_id)),
            }
        )

    def _handle_gateway_relay(self, node: BackendNode, message: Dict[str, Any]) -> None:
        raw = message.get("message")
        if isinstance(raw, str):
            try:
                payload = json.loads(raw)
            except ValueError:
                _LOGGER.warning("Voice node %s asked to relay an unreadable payload", node.host)
                return
        else:
            payload = raw
        if not isinstance(payload, dict):
            _LOGGER.warning("Voice node %s asked to relay a non-object payload", node.host)
            return

        self.gateway.send_raw(payload)

        data = payload.get("d") or {}
        if payload.get("op") == VOICE_STATE_OP and not data.get("channel_id"):
            self.sessions.pop(str(data.get("guild_id")), None)

    def _handle_player_update(self, node: BackendNode, message: Dict[str, Any]) -> None:
        session = self._session_for(node, message)
        if session is not None:
            session.state_update(message.get("state") or {})

    def _handle_player_event(self, node: BackendNode, message: Dict[str, Any]) -> None:
        session = self._session_for(node, message)
        if session is None:
            return

        event_type = message.get("type")
        if event_type == "TrackEndEvent":
            session.on_track_end(message)
        elif event_type == "TrackExceptionEvent":
            session.on_track_exception(message)
        elif event_type == "TrackStuckEvent":
            session.on_track_stuck(message)
        else:
            _LOGGER.warning("Unexpected event type %r from voice node %s", event_type, node.host)
            session.emit(SessionEvent.WARN, f"Unexpected event type: {event_type}")

    def _session_for(self, node: BackendNode, message: Dict[str, Any]) -> Optional[Session]:
        session = self.sessions.get(str(message.get("guildId")))
        if session is None or session.node is not node:
            return None
        return session


__all__ = ["SessionManager", "PendingSession", "RESOLVED", "REJECTED", "TIMED_OUT"]
