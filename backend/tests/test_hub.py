"""
SilentLine - Dispatch Hub Tests

End-to-end orchestration through the hub with fake channels:
- Register -> incoming call -> join -> vitals replay
- Vitals ordering regardless of registration timing
- Signaling, peer reconnect replay, disconnect semantics
- Shutdown

Run with: pytest tests/test_hub.py -v
"""

import asyncio

import pytest

from app.core.exceptions import CallNotFoundError, DuplicateCallError
from app.core.hub import DispatchHub, create_hub
from app.core.types import IngestItem, Location, Role, VitalsOutcome

from conftest import FakeChannel, YieldingChannel, make_report, make_vitals


class TestCallFlow:
    """Happy-path call flow."""

    @pytest.mark.asyncio
    async def test_register_announces_to_consoles(self, hub: DispatchHub, caller: FakeChannel):
        console = FakeChannel("console")
        hub.connect_dispatcher(console)

        await hub.register_call("c1", caller, Location(35.91, -79.06))

        assert caller.of_type("call_registered")[0]["call_id"] == "c1"
        assert console.of_type("incoming_call") == [
            {"type": "incoming_call", "call_id": "c1", "location": {"lat": 35.91, "lng": -79.06}}
        ]

    @pytest.mark.asyncio
    async def test_duplicate_registration_raises(self, hub: DispatchHub, caller: FakeChannel):
        await hub.register_call("c1", caller)

        with pytest.raises(DuplicateCallError):
            await hub.register_call("c1", FakeChannel("other"))

    @pytest.mark.asyncio
    async def test_vitals_then_join_replays_exact_payload(
        self, hub: DispatchHub, caller: FakeChannel, dispatcher: FakeChannel
    ):
        await hub.register_call("c1", caller, Location(35.91, -79.06))
        reading = make_vitals(heart_rate=112.0, breathing_rate=24.0)
        assert await hub.record_vitals("c1", reading) is VitalsOutcome.STORED

        try:
            returned = await hub.join_call("c1", dispatcher)

            assert returned == reading
            vitals_messages = dispatcher.of_type("vitals")
            assert vitals_messages == [
                {"type": "vitals", "call_id": "c1", "vitals": reading.to_dict()}
            ]
            assert caller.of_type("dispatcher_joined") == [
                {"type": "dispatcher_joined", "call_id": "c1"}
            ]
        finally:
            await hub.end_call("c1", "test_cleanup")

    @pytest.mark.asyncio
    async def test_vitals_before_registration_still_delivered(
        self, hub: DispatchHub, caller: FakeChannel, dispatcher: FakeChannel
    ):
        reading = make_vitals(heart_rate=99.0)
        await hub.record_vitals("c1", reading)

        view = await hub.register_call("c1", caller)
        assert view.last_vitals == reading
        assert caller.of_type("call_registered")[0]["vitals_buffered"] is True

        try:
            await hub.join_call("c1", dispatcher)
            assert dispatcher.of_type("vitals")[0]["vitals"]["heart_rate"] == 99.0
        finally:
            await hub.end_call("c1", "test_cleanup")

    @pytest.mark.asyncio
    async def test_vitals_after_join_forwarded_immediately(
        self, hub: DispatchHub, caller: FakeChannel, dispatcher: FakeChannel
    ):
        await hub.register_call("c1", caller)
        await hub.join_call("c1", dispatcher)
        try:
            assert await hub.record_vitals("c1", make_vitals(heart_rate=101.0)) is VitalsOutcome.FORWARDED
            assert dispatcher.of_type("vitals")[-1]["vitals"]["heart_rate"] == 101.0
        finally:
            await hub.end_call("c1", "test_cleanup")

    @pytest.mark.asyncio
    async def test_join_never_delivers_stale_reading_last(self, hub: DispatchHub, caller: FakeChannel):
        console = YieldingChannel("console")
        await hub.register_call("c1", caller)
        await hub.record_vitals("c1", make_vitals(heart_rate=100.0))

        joining = asyncio.create_task(hub.join_call("c1", console))
        await asyncio.sleep(0)
        # Arrives while call_joined is still being written
        await hub.record_vitals("c1", make_vitals(heart_rate=140.0))
        try:
            returned = await joining

            delivered = [m["vitals"]["heart_rate"] for m in console.of_type("vitals")]
            assert delivered[-1] == 140.0
            assert 100.0 not in delivered
            assert returned.heart_rate == 140.0
        finally:
            await hub.end_call("c1", "test_cleanup")

    @pytest.mark.asyncio
    async def test_vitals_for_ending_call_reported_dropped(
        self, hub: DispatchHub, caller: FakeChannel, dispatcher: FakeChannel
    ):
        await hub.register_call("c1", caller)
        await hub.join_call("c1", dispatcher)
        teardown = hub.registry.begin_end("c1", "caller_ended")

        assert await hub.record_vitals("c1", make_vitals()) is VitalsOutcome.DROPPED

        await teardown
        assert dispatcher.of_type("vitals") == []
        assert hub.vitals.pending_count == 0

    @pytest.mark.asyncio
    async def test_join_unknown_call(self, hub: DispatchHub, dispatcher: FakeChannel):
        with pytest.raises(CallNotFoundError):
            await hub.join_call("ghost", dispatcher)

    @pytest.mark.asyncio
    async def test_join_starts_scheduler(self, hub: DispatchHub, caller: FakeChannel, dispatcher: FakeChannel):
        await hub.register_call("c1", caller)
        await hub.join_call("c1", dispatcher)

        assert hub.registry.lookup("c1").analysis_running

        await hub.end_call("c1", "dispatcher_ended")
        assert hub.registry.lookup("c1") is None
        assert caller.of_type("call_ended")[0]["reason"] == "dispatcher_ended"


class TestSignalingAndReconnect:
    """Relay and peer reconnect through the hub."""

    @pytest.mark.asyncio
    async def test_signal_round_trip(self, hub: DispatchHub, caller: FakeChannel, dispatcher: FakeChannel):
        await hub.register_call("c1", caller)
        await hub.join_call("c1", dispatcher)
        try:
            assert await hub.forward_signal("c1", Role.CALLER, {"sdp": "offer"}) is True
            assert await hub.forward_signal("c1", Role.DISPATCHER, {"sdp": "answer"}) is True

            assert dispatcher.of_type("signal")[0]["payload"] == {"sdp": "offer"}
            assert caller.of_type("signal")[0]["payload"] == {"sdp": "answer"}
        finally:
            await hub.end_call("c1", "test_cleanup")

    @pytest.mark.asyncio
    async def test_peer_reconnect_replays_vitals(
        self, hub: DispatchHub, caller: FakeChannel, dispatcher: FakeChannel
    ):
        await hub.register_call("c1", caller)
        await hub.record_vitals("c1", make_vitals())
        await hub.join_call("c1", dispatcher)
        try:
            assert await hub.replay_vitals("c1") is True
            assert len(dispatcher.of_type("vitals")) == 2
        finally:
            await hub.end_call("c1", "test_cleanup")

    @pytest.mark.asyncio
    async def test_replay_without_dispatcher_is_noop(self, hub: DispatchHub, caller: FakeChannel):
        await hub.register_call("c1", caller)
        await hub.record_vitals("c1", make_vitals())

        assert await hub.replay_vitals("c1") is False


class TestWatchers:
    """Extra dashboard observers."""

    @pytest.mark.asyncio
    async def test_watch_catches_up_on_vitals_and_report(self, hub: DispatchHub, caller: FakeChannel):
        await hub.register_call("c1", caller)
        await hub.record_vitals("c1", make_vitals())
        hub.registry.record_report("c1", make_report("Caller safe for now", severity=2))
        watcher = FakeChannel("watcher")

        await hub.watch_call("c1", watcher)

        assert len(watcher.of_type("vitals")) == 1
        assert watcher.of_type("triage_update")[0]["report"]["summary"] == "Caller safe for now"

    @pytest.mark.asyncio
    async def test_watch_unknown_call(self, hub: DispatchHub):
        with pytest.raises(CallNotFoundError):
            await hub.watch_call("ghost", FakeChannel("watcher"))


class TestDisconnects:
    """Transport disconnect semantics."""

    @pytest.mark.asyncio
    async def test_caller_disconnect_ends_its_calls(
        self, hub: DispatchHub, caller: FakeChannel, dispatcher: FakeChannel
    ):
        await hub.register_call("c1", caller)
        await hub.register_call("c2", caller)
        await hub.join_call("c1", dispatcher)

        assert await hub.disconnect_caller(caller) == 2

        assert hub.registry.active_count == 0
        ended = dispatcher.of_type("call_ended")
        assert [m["reason"] for m in ended] == ["caller_disconnected"]

    @pytest.mark.asyncio
    async def test_cancelled_caller_disconnect_still_notifies_dispatcher(
        self, hub: DispatchHub, caller: FakeChannel
    ):
        console = YieldingChannel("console")
        await hub.register_call("c1", caller)
        await hub.join_call("c1", console)

        closing = asyncio.create_task(hub.disconnect_caller(caller))
        await asyncio.sleep(0)
        closing.cancel()
        with pytest.raises(asyncio.CancelledError):
            await closing

        await hub.registry.wait_for_teardowns()

        assert console.of_type("call_ended") == [
            {"type": "call_ended", "call_id": "c1", "reason": "caller_disconnected"}
        ]
        assert hub.registry.active_count == 0

    @pytest.mark.asyncio
    async def test_dispatcher_disconnect_keeps_call(
        self, hub: DispatchHub, caller: FakeChannel, dispatcher: FakeChannel
    ):
        hub.connect_dispatcher(dispatcher)
        await hub.register_call("c1", caller)
        await hub.join_call("c1", dispatcher)

        hub.disconnect_dispatcher(dispatcher)

        view = hub.registry.lookup("c1")
        assert view is not None
        assert view.dispatcher_channel is None
        assert hub.broadcast.observer_count == 0
        assert caller.of_type("call_ended") == []

        await hub.end_call("c1", "test_cleanup")

    @pytest.mark.asyncio
    async def test_ingest_for_unknown_call_dropped(self, hub: DispatchHub):
        assert hub.ingest("ghost", IngestItem.audio(b"\x00\x00")) is False


class TestLifecycle:
    """Startup / shutdown and factory."""

    @pytest.mark.asyncio
    async def test_shutdown_ends_everything(self, hub: DispatchHub, dispatcher: FakeChannel):
        for cid in ("a", "b"):
            channel = FakeChannel(cid)
            await hub.register_call(cid, channel)
            await hub.join_call(cid, dispatcher)
        await hub.record_vitals("pending", make_vitals())

        await hub.startup()
        await hub.shutdown()

        assert hub.registry.active_count == 0
        assert hub.vitals.pending_count == 0
        assert {m["reason"] for m in dispatcher.of_type("call_ended")} == {"server_shutdown"}

    def test_create_hub_uses_configured_analyzer(self, test_settings):
        hub = create_hub(test_settings)

        assert hub.analyzer.model_id == "dummy-triage-v0.1.0"
        assert hub.stats["active_calls"] == 0
