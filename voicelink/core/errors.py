from __future__ import annotations

from typing import Any, Dict, Optional


class VoiceLinkError(RuntimeError):
    """Base class for every error raised or emitted by the voice link core."""


class NodeError(VoiceLinkError):
    """A transient failure on a single voice node connection.

    These are emitted through the node's ``ERROR`` notification and never
    raised out of the connection; the node recovers through its reconnect
    backoff or by dropping the offending message.
    """

    def __init__(self, message: str, *, host: Optional[str] = None) -> None:
        super().__init__(message)
        self.host = host


class NoAvailableNode(VoiceLinkError):
    def __init__(self, region: Optional[str] = None) -> None:
        message = "No available voice nodes."
        if region:
            message = f"No available voice nodes (requested region: {region})."
        super().__init__(message)
        self.region = region


class HandshakeTimeout(VoiceLinkError):
    def __init__(self, guild_id: str, timeout: float) -> None:
        super().__init__(
            f"Voice connection timeout for guild {guild_id}: no voice server update "
            f"was received within {timeout:g} seconds."
        )
        self.guild_id = guild_id
        self.timeout = timeout


class SessionDisconnected(VoiceLinkError):
    def __init__(self, guild_id: str, reason: Any = None) -> None:
        message = f"Voice session for guild {guild_id} disconnected"
        if reason is not None:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.guild_id = guild_id
        self.reason = reason


class TrackException(VoiceLinkError):
    """Carries a node-reported playback error on the session ``ERROR`` notification."""

    def __init__(self, guild_id: str, payload: Dict[str, Any]) -> None:
        detail = payload.get("error") or payload.get("exception") or "unknown error"
        if isinstance(detail, dict):
            detail = detail.get("message") or detail
        super().__init__(f"Track failed in guild {guild_id}: {detail}")
        self.guild_id = guild_id
        self.track = payload.get("track")
        self.payload = payload


__all__ = [
    "VoiceLinkError",
    "NodeError",
    "NoAvailableNode",
    "HandshakeTimeout",
    "SessionDisconnected",
    "TrackException",
]
