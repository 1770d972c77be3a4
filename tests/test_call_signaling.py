"""Tests for CallSignalingEngine against the in-process store and fake media."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.exceptions import CallBusyError, CallFailedError, InvalidInputError, NoIncomingOfferError
from app.models.call import CallSession, CallState
from app.services.call_signaling import CallSignalingEngine, call_path, candidates_path, is_session_active
from app.store import SERVER_TIMESTAMP, Query
from app.store.memory import MemoryStore
from fakes import FakeRtc, wait_until

THREAD = "alice_bob"


def _engine(store, settings, rtc: FakeRtc) -> CallSignalingEngine:
    return CallSignalingEngine(store, settings, rtc.peer_factory, rtc.media_factory)


@pytest.fixture
def caller_rtc():
    return FakeRtc()


@pytest.fixture
def callee_rtc():
    return FakeRtc()


@pytest.fixture
def caller(store, settings, caller_rtc):
    return _engine(store, settings, caller_rtc)


@pytest.fixture
def callee(store, settings, callee_rtc):
    return _engine(store, settings, callee_rtc)


async def _connect(caller, callee):
    await caller.start_call(THREAD, "alice", "bob")
    await callee.answer_call(THREAD, "bob")
    await wait_until(lambda: caller.state == CallState.CONNECTED and callee.state == CallState.CONNECTED)


async def _candidate_docs(store, collection: str):
    return await store.query(Query(candidates_path(THREAD, collection)))


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

class TestPaths:
    def test_candidate_collections_sit_under_the_session(self):
        assert call_path(THREAD) == "chats/alice_bob/webrtc/call"
        assert candidates_path(THREAD, "offerCandidates") == "chats/alice_bob/webrtc/call/offerCandidates"
        assert candidates_path(THREAD, "answerCandidates") == "chats/alice_bob/webrtc/call/answerCandidates"


# ---------------------------------------------------------------------------
# is_session_active
# ---------------------------------------------------------------------------

class TestIsSessionActive:
    NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

    def _session(self, **fields) -> CallSession:
        data = {"offer": {"type": "offer", "sdp": "v=0", "from": "alice", "to": "bob"}}
        data.update(fields)
        return CallSession.model_validate(data)

    def test_without_offer_is_inactive(self, settings):
        assert not is_session_active(CallSession(), settings, self.NOW)

    def test_ended_session_is_inactive(self, settings):
        session = self._session(createdAt=self.NOW, endedAt=self.NOW)
        assert not is_session_active(session, settings, self.NOW)

    def test_unanswered_offer_expires_after_answer_timeout(self):
        from app.config import Settings

        s = Settings(STORE_BACKEND="memory", CALL_ANSWER_TIMEOUT_SECONDS=45)
        session = self._session(createdAt=self.NOW - timedelta(seconds=30))
        assert is_session_active(session, s, self.NOW)
        assert not is_session_active(session, s, self.NOW + timedelta(seconds=20))

    def test_answered_session_lives_until_max_duration(self, settings):
        session = self._session(
            createdAt=self.NOW - timedelta(hours=1),
            answer={"type": "answer", "sdp": "v=0", "from": "bob", "to": "alice"},
        )
        assert is_session_active(session, settings, self.NOW)
        assert not is_session_active(session, settings, self.NOW + timedelta(hours=4))


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestCallFlow:
    async def test_both_sides_connect_and_exchange_candidates(
        self, store, caller, callee, caller_rtc, callee_rtc
    ):
        caller_states: list[CallState] = []
        caller.on_state_change(caller_states.append)

        await _connect(caller, callee)
        await wait_until(
            lambda: caller_rtc.pc.added_candidates and callee_rtc.pc.added_candidates
        )

        assert caller_states == [CallState.OFFERING, CallState.AWAITING_ANSWER, CallState.CONNECTED]
        assert caller.role == "caller" and callee.role == "callee"
        assert callee.peer_uid == "alice"

        doc = (await store.get(call_path(THREAD))).to_dict()
        assert doc["offer"]["from"] == "alice" and doc["offer"]["to"] == "bob"
        assert doc["answer"]["from"] == "bob" and doc["answer"]["to"] == "alice"
        assert doc["createdAt"] is not None and doc["answeredAt"] is not None

        assert len(await _candidate_docs(store, "offerCandidates")) == 1
        assert len(await _candidate_docs(store, "answerCandidates")) == 1
        assert caller_rtc.pc.remote_description.type == "answer"
        assert callee_rtc.pc.remote_description.type == "offer"

    async def test_remote_track_listeners_receive_track(self, caller, callee):
        tracks = []
        caller.on_remote_track(tracks.append)
        await _connect(caller, callee)
        assert [t.label for t in tracks] == ["remote-answer"]

    async def test_answer_applied_only_once(self, store, caller, callee, caller_rtc):
        await _connect(caller, callee)
        await store.update(call_path(THREAD), {"answeredAt": SERVER_TIMESTAMP})
        await store.update(call_path(THREAD), {"answeredAt": SERVER_TIMESTAMP})
        await asyncio.sleep(0.05)
        assert caller_rtc.pc.remote_set_count == 1

    async def test_hangup_ends_both_sides(self, store, caller, callee, caller_rtc, callee_rtc):
        await _connect(caller, callee)

        await caller.hangup()

        assert caller.state == CallState.IDLE
        assert caller.end_reason == "hangup"
        await wait_until(lambda: callee.state == CallState.IDLE)
        assert callee.end_reason == "hangup"

        doc = (await store.get(call_path(THREAD))).to_dict()
        assert doc["endedAt"] is not None and doc["endReason"] == "hangup"
        for rtc in (caller_rtc, callee_rtc):
            assert rtc.pc.closed
            assert rtc.media[-1].stop_count == 1
        assert store.listener_count == 0

    async def test_new_call_purges_previous_candidates(self, store, caller, callee):
        await _connect(caller, callee)
        await caller.hangup()
        await wait_until(lambda: callee.state == CallState.IDLE)

        await caller.start_call(THREAD, "alice", "bob")

        assert len(await _candidate_docs(store, "offerCandidates")) == 1
        assert await _candidate_docs(store, "answerCandidates") == []
        doc = (await store.get(call_path(THREAD))).to_dict()
        assert "endedAt" not in doc and "answer" not in doc
        await caller.hangup()

    async def test_toggle_mute(self, caller, callee, caller_rtc):
        assert caller.toggle_mute() is False  # no call, nothing to mute
        await _connect(caller, callee)
        assert caller.toggle_mute() is True
        assert caller_rtc.media[-1].muted
        assert caller.muted
        assert caller.toggle_mute() is False
        await caller.hangup()


# ---------------------------------------------------------------------------
# Guards and failures
# ---------------------------------------------------------------------------

class TestCallGuards:
    async def test_answer_without_offer(self, callee, callee_rtc):
        with pytest.raises(NoIncomingOfferError):
            await callee.answer_call(THREAD, "bob")
        assert callee.state == CallState.IDLE
        assert callee_rtc.peers == []

    async def test_caller_cannot_answer_own_offer(self, store, settings, caller):
        await caller.start_call(THREAD, "alice", "bob")
        other_device = _engine(store, settings, FakeRtc())
        with pytest.raises(NoIncomingOfferError):
            await other_device.answer_call(THREAD, "alice")
        await caller.hangup()

    async def test_answer_after_hangup_finds_no_offer(self, caller, callee):
        await caller.start_call(THREAD, "alice", "bob")
        await caller.hangup()
        with pytest.raises(NoIncomingOfferError):
            await callee.answer_call(THREAD, "bob")

    async def test_busy_while_session_is_live(self, store, settings, caller, callee):
        await _connect(caller, callee)
        third = _engine(store, settings, FakeRtc())
        with pytest.raises(CallBusyError):
            await third.start_call(THREAD, "bob", "alice")
        assert third.state == CallState.IDLE
        doc = (await store.get(call_path(THREAD))).to_dict()
        assert doc["offer"]["from"] == "alice"
        await caller.hangup()

    async def test_stale_session_does_not_block(self, store, caller):
        await store.set(
            call_path(THREAD),
            {
                "offer": {"type": "offer", "sdp": "v=0", "from": "bob", "to": "alice"},
                "createdAt": datetime.now(timezone.utc) - timedelta(hours=10),
            },
        )
        await caller.start_call(THREAD, "alice", "bob")
        assert caller.state == CallState.AWAITING_ANSWER
        await caller.hangup()

    async def test_invalid_arguments(self, caller):
        with pytest.raises(InvalidInputError):
            await caller.start_call(THREAD, "alice", "alice")
        with pytest.raises(InvalidInputError):
            await caller.start_call("", "alice", "bob")
        assert caller.state == CallState.IDLE

    async def test_second_call_on_same_device_rejected(self, caller):
        await caller.start_call(THREAD, "alice", "bob")
        with pytest.raises(InvalidInputError):
            await caller.start_call("alice_carol", "alice", "carol")
        assert caller.thread_id == THREAD
        await caller.hangup()

    async def test_media_failure_cleans_up(self, store, settings):
        rtc = FakeRtc(fail_media=True)
        engine = _engine(store, settings, rtc)
        with pytest.raises(CallFailedError):
            await engine.start_call(THREAD, "alice", "bob")
        assert engine.state == CallState.IDLE
        assert isinstance(engine.last_error, CallFailedError)
        assert not (await store.get(call_path(THREAD))).exists

    async def test_callee_remote_description_failure(self, store, settings, caller):
        rtc = FakeRtc(fail_remote=True)
        callee = _engine(store, settings, rtc)
        await caller.start_call(THREAD, "alice", "bob")

        with pytest.raises(CallFailedError):
            await callee.answer_call(THREAD, "bob")

        assert callee.state == CallState.IDLE
        assert rtc.pc.closed
        assert rtc.media[-1].stop_count == 1
        await caller.hangup()

    async def test_caller_answer_failure_hangs_up(self, store, settings, callee):
        rtc = FakeRtc(fail_remote=True)
        caller = _engine(store, settings, rtc)
        await caller.start_call(THREAD, "alice", "bob")
        await callee.answer_call(THREAD, "bob")

        await wait_until(lambda: caller.state == CallState.IDLE)
        assert caller.end_reason == "failed"
        assert isinstance(caller.last_error, CallFailedError)
        await wait_until(lambda: callee.state == CallState.IDLE)
        doc = (await store.get(call_path(THREAD))).to_dict()
        assert doc["endReason"] == "failed"

    async def test_bad_candidate_is_skipped(self, store, settings, caller):
        rtc = FakeRtc(fail_candidates=True)
        callee = _engine(store, settings, rtc)
        await _connect(caller, callee)
        await wait_until(lambda: rtc.pc.remote_set_count == 1)
        assert callee.state == CallState.CONNECTED
        assert rtc.pc.added_candidates == []
        await caller.hangup()

    async def test_connection_failure_hangs_up(self, store, caller, callee, caller_rtc):
        await _connect(caller, callee)
        caller_rtc.pc.on_connection_state_change("failed")
        await wait_until(lambda: caller.state == CallState.IDLE)
        assert caller.end_reason == "connection_failed"
        await wait_until(lambda: callee.state == CallState.IDLE)


class TestTimeoutAndCleanup:
    async def test_unanswered_call_times_out(self, store, caller_rtc):
        from app.config import Settings

        settings = Settings(STORE_BACKEND="memory", CALL_ANSWER_TIMEOUT_SECONDS=0.05)
        engine = _engine(store, settings, caller_rtc)
        await engine.start_call(THREAD, "alice", "bob")
        assert engine.state == CallState.AWAITING_ANSWER

        await wait_until(lambda: engine.state == CallState.IDLE)
        assert engine.end_reason == "timeout"
        doc = (await store.get(call_path(THREAD))).to_dict()
        assert doc["endReason"] == "timeout"
        assert caller_rtc.pc.closed

    async def test_cleanup_is_idempotent(self, store, caller):
        await caller.cleanup()
        await caller.start_call(THREAD, "alice", "bob")
        await caller.cleanup()
        await caller.cleanup()
        assert caller.state == CallState.IDLE
        assert caller.thread_id is None
        assert store.listener_count == 0

    async def test_hangup_when_idle_is_noop(self, store, caller):
        await caller.hangup()
        assert caller.state == CallState.IDLE
        assert not (await store.get(call_path(THREAD))).exists

    async def test_state_listener_remover(self, caller):
        seen = []
        remove = caller.on_state_change(seen.append)
        remove()
        remove()
        await caller.start_call(THREAD, "alice", "bob")
        await caller.hangup()
        assert seen == []


# ---------------------------------------------------------------------------
# Teardown while a call is still being set up
# ---------------------------------------------------------------------------

class TestTeardownDuringSetup:
    @pytest.fixture
    def slow_store(self):
        return MemoryStore(latency=0.03)

    @staticmethod
    async def _assert_released(store, rtc: FakeRtc, engine: CallSignalingEngine) -> None:
        assert engine.state == CallState.IDLE
        assert engine.thread_id is None
        assert all(pc.closed for pc in rtc.peers)
        assert all(media.stop_count == 1 for media in rtc.media)
        snap = await store.get(call_path(THREAD))
        assert not snap.exists or snap.get("endedAt") is not None

    @pytest.mark.parametrize("stage", ["before_peer", "after_peer"])
    async def test_hangup_while_offering(self, slow_store, settings, stage):
        rtc = FakeRtc()
        engine = _engine(slow_store, settings, rtc)

        task = asyncio.create_task(engine.start_call(THREAD, "alice", "bob"))
        if stage == "before_peer":
            await wait_until(lambda: engine.state == CallState.OFFERING)
        else:
            await wait_until(lambda: bool(rtc.peers))
        await engine.hangup()

        with pytest.raises(CallFailedError):
            await task
        await self._assert_released(slow_store, rtc, engine)
        assert slow_store.listener_count == 0
        if stage == "before_peer":
            assert rtc.peers == [] and rtc.media == []

    async def test_cleanup_while_offering(self, slow_store, settings):
        rtc = FakeRtc()
        engine = _engine(slow_store, settings, rtc)

        task = asyncio.create_task(engine.start_call(THREAD, "alice", "bob"))
        await wait_until(lambda: bool(rtc.peers))
        await engine.cleanup()

        with pytest.raises(CallFailedError):
            await task
        await self._assert_released(slow_store, rtc, engine)
        assert slow_store.listener_count == 0

    async def test_hangup_while_answering(self, slow_store, settings):
        caller_rtc, callee_rtc = FakeRtc(), FakeRtc()
        caller = _engine(slow_store, settings, caller_rtc)
        callee = _engine(slow_store, settings, callee_rtc)
        await caller.start_call(THREAD, "alice", "bob")

        task = asyncio.create_task(callee.answer_call(THREAD, "bob"))
        await wait_until(lambda: bool(callee_rtc.peers))
        await callee.hangup()

        with pytest.raises(CallFailedError):
            await task
        await self._assert_released(slow_store, callee_rtc, callee)
        await wait_until(lambda: caller.state == CallState.IDLE)
        assert slow_store.listener_count == 0

    async def test_engine_is_reusable_after_aborted_setup(self, slow_store, settings):
        rtc = FakeRtc()
        engine = _engine(slow_store, settings, rtc)

        task = asyncio.create_task(engine.start_call(THREAD, "alice", "bob"))
        await wait_until(lambda: engine.state == CallState.OFFERING)
        await engine.hangup()
        with pytest.raises(CallFailedError):
            await task

        await engine.start_call(THREAD, "alice", "bob")
        assert engine.state == CallState.AWAITING_ANSWER
        doc = (await slow_store.get(call_path(THREAD))).to_dict()
        assert doc["offer"]["from"] == "alice"
        assert "endedAt" not in doc
        await engine.hangup()
        assert slow_store.listener_count == 0
