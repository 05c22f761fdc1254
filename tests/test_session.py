import asyncio
from typing import Any, List
from unittest.mock import MagicMock

from voicelink.core.errors import SessionDisconnected, TrackException
from voicelink.core.events import SessionEvent
from voicelink.core.scheduler import Scheduler
from voicelink.core.session import Session


async def _ticks(count: int = 5) -> None:
    for _ in range(count):
        await asyncio.sleep(0)


def create_session(node: Any, gateway: Any, scheduler: Scheduler, **kwargs: Any) -> Session:
    return Session(
        "100",
        channel_id="200",
        node=node,
        gateway=gateway,
        scheduler=scheduler,
        **kwargs,
    )


def test_commands_reach_the_node_in_submission_order(make_node, gateway) -> None:
    async def runner() -> None:
        scheduler = Scheduler()
        node = make_node("eu-1", scheduler)
        session = create_session(node, gateway, scheduler)

        session.play("trackA")
        session.stop()
        session.play("trackB", start_time=1500, end_time=None)

        assert node.ops() == ["play"]
        assert session.queued == 2

        await _ticks()

        assert node.ops() == ["play", "stop", "play"]
        assert node.sent[2] == {"op": "play", "guildId": "100", "track": "trackB", "startTime": 1500}
        assert [command["op"] for command in session.sent] == ["play", "stop", "play"]
        await scheduler.close()

    asyncio.run(runner())


def test_held_commands_are_released_behind_voice_update(make_node, gateway) -> None:
    async def runner() -> None:
        scheduler = Scheduler()
        node = make_node("eu-1", scheduler)
        session = create_session(node, gateway, scheduler)
        ready: List[bool] = []
        session.on(SessionEvent.READY, lambda: ready.append(True))

        session.hold()
        session.set_volume(80)
        session.pause()
        await _ticks()
        assert node.sent == []

        event = {"endpoint": "eu.discord.media", "guild_id": "100", "token": "abc"}
        session.connect("voice-session", event)
        await _ticks()

        assert node.ops() == ["voiceUpdate", "volume", "pause"]
        assert node.sent[0] == {
            "op": "voiceUpdate",
            "guildId": "100",
            "sessionId": "voice-session",
            "event": event,
        }
        assert session.ready
        assert ready == [True]
        await scheduler.close()

    asyncio.run(runner())


def test_play_on_draining_node_moves_the_session(make_node, gateway) -> None:
    async def runner() -> None:
        scheduler = Scheduler()
        node = make_node("eu-1", scheduler)
        manager = MagicMock()
        session = create_session(node, gateway, scheduler, manager=manager)
        session.state_update({"position": 9000})
        node.drain()

        session.play("trackA")

        manager.switch_node.assert_called_once_with(session)
        assert node.sent == []
        assert session.track == "trackA"
        assert session.position == 0
        await scheduler.close()

    asyncio.run(runner())


def test_replaced_track_end_keeps_the_new_track(make_node, gateway) -> None:
    async def runner() -> None:
        scheduler = Scheduler()
        session = create_session(make_node("eu-1", scheduler), gateway, scheduler)
        ends: List[Any] = []
        session.on(SessionEvent.END, ends.append)

        session.play("trackA")
        session.play("trackB")
        session.on_track_end({"type": "TrackEndEvent", "track": "trackA", "reason": "REPLACED"})
        assert session.playing
        assert session.track == "trackB"
        assert session.last_track == "trackA"

        session.on_track_end({"type": "TrackEndEvent", "track": "trackB", "reason": "FINISHED"})
        assert not session.playing
        assert session.track is None
        assert session.last_track == "trackB"
        assert [end["reason"] for end in ends] == ["REPLACED", "FINISHED"]
        await scheduler.close()

    asyncio.run(runner())


def test_stuck_track_stops_then_reports_end(make_node, gateway) -> None:
    async def runner() -> None:
        scheduler = Scheduler()
        node = make_node("eu-1", scheduler)
        session = create_session(node, gateway, scheduler)
        seen: List[str] = []
        session.on(SessionEvent.STUCK, lambda message: seen.append("stuck"))
        session.on(SessionEvent.END, lambda message: seen.append("end"))

        session.play("trackA")
        await _ticks()
        session.on_track_stuck({"type": "TrackStuckEvent", "thresholdMs": 10000})

        assert seen == ["stuck"]
        await _ticks()
        assert seen == ["stuck", "end"]
        assert node.ops() == ["play", "stop"]
        assert not session.playing
        await scheduler.close()

    asyncio.run(runner())


def test_track_exception_is_reported_as_error(make_node, gateway) -> None:
    async def runner() -> None:
        scheduler = Scheduler()
        session = create_session(make_node("eu-1", scheduler), gateway, scheduler)
        errors: List[Exception] = []
        session.on(SessionEvent.ERROR, errors.append)

        session.on_track_exception(
            {"type": "TrackExceptionEvent", "track": "trackA", "error": "decoder failed"}
        )

        assert isinstance(errors[0], TrackException)
        assert errors[0].track == "trackA"
        assert "decoder failed" in str(errors[0])
        await scheduler.close()

    asyncio.run(runner())


def test_disconnect_drops_queue_and_notifies(make_node, gateway) -> None:
    async def runner() -> None:
        scheduler = Scheduler()
        node = make_node("eu-1", scheduler)
        session = create_session(node, gateway, scheduler)
        reasons: List[Any] = []
        session.on(SessionEvent.DISCONNECT, reasons.append)

        session.play("trackA")
        session.seek(3000)
        session.disconnect(RuntimeError("node lost"))
        await _ticks()

        assert node.ops() == ["play", "disconnect"]
        assert session.destroyed
        assert not session.playing
        assert isinstance(reasons[0], SessionDisconnected)
        assert "node lost" in str(reasons[0])
        await scheduler.close()

    asyncio.run(runner())


def test_disconnected_session_never_reports_ready(make_node, gateway) -> None:
    async def runner() -> None:
        scheduler = Scheduler()
        session = create_session(make_node("eu-1", scheduler), gateway, scheduler)
        ready: List[bool] = []
        session.on(SessionEvent.READY, lambda: ready.append(True))

        session.connect("voice-session", {"endpoint": "eu", "guild_id": "100", "token": "abc"})
        session.disconnect()
        await _ticks()

        assert ready == []
        assert not session.ready
        await scheduler.close()

    asyncio.run(runner())


def test_switch_channel_only_signals_gateway_when_reactive(make_node, gateway) -> None:
    async def runner() -> None:
        scheduler = Scheduler()
        session = create_session(make_node("eu-1", scheduler), gateway, scheduler)

        session.switch_channel("201")
        assert session.channel_id == "201"
        assert gateway.voice_states == []

        session.switch_channel("202", reactive=True)
        session.switch_channel("202", reactive=True)
        assert gateway.voice_states == [("100", "202", False, False)]
        await scheduler.close()

    asyncio.run(runner())


def test_sent_history_is_bounded(make_node, gateway) -> None:
    async def runner() -> None:
        scheduler = Scheduler()
        session = create_session(make_node("eu-1", scheduler), gateway, scheduler, history_size=2)

        session.set_volume(10)
        session.set_volume(20)
        session.set_volume(30)
        await _ticks()

        assert [command["volume"] for command in session.sent] == [20, 30]
        assert session.volume == 30
        await scheduler.close()

    asyncio.run(runner())
