"""
Amora — Call Signaling Engine

Peer-to-peer voice calls signaled through the document store.  Each chat
thread owns one call-session document, ``chats/{thread_id}/webrtc/call``,
overwritten by every new call attempt, plus two append-only candidate
collections beside it (``offerCandidates`` written by the caller,
``answerCandidates`` written by the callee).

State machine (one engine instance per local device)::

    caller:  IDLE → OFFERING  → AWAITING_ANSWER → CONNECTED → ENDED → IDLE
    callee:  IDLE → ANSWERING → CONNECTED → ENDED → IDLE

Any failure, hang-up, peer hang-up or answer timeout ends in ``cleanup()``,
which always returns the engine to IDLE.

Rules enforced here:
  * The remote description is applied at most once per side.
  * Remote candidates that arrive before the remote description are held
    back and applied right after it.
  * A candidate that fails to apply is logged and skipped.
  * Only one live call per thread: ``start_call`` raises ``CallBusyError``
    while an unexpired, un-ended session exists.
  * A hangup or cleanup that lands while ``start_call``/``answer_call`` is
    still awaiting aborts that setup with ``CallFailedError``; an offer or
    answer it already published is marked ended.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic import ValidationError

from app.config import Settings, get_settings
from app.exceptions import (
    CallBusyError,
    CallFailedError,
    InvalidInputError,
    NoIncomingOfferError,
)
from app.models import ANSWER_CANDIDATES, CALL_DOC, CHATS, OFFER_CANDIDATES, WEBRTC
from app.models.call import CallSession, CallState, IceCandidate, SessionDescription
from app.rtc.peer import LocalMedia, MediaFactory, PeerConnection, PeerFactory
from app.store import (
    SERVER_TIMESTAMP,
    DocumentSnapshot,
    DocumentStore,
    Query,
    QuerySnapshot,
    Subscription,
    Transaction,
    join_path,
)

logger = structlog.get_logger("amora.call_signaling")

StateListener = Callable[[CallState], None]
TrackListener = Callable[[Any], None]

CALLER = "caller"
CALLEE = "callee"


def call_path(thread_id: str) -> str:
    return join_path(CHATS, thread_id, WEBRTC, CALL_DOC)


def candidates_path(thread_id: str, collection: str) -> str:
    return join_path(CHATS, thread_id, WEBRTC, CALL_DOC, collection)


def is_session_active(session: CallSession, settings: Settings, now: Optional[datetime] = None) -> bool:
    """Whether a stored call session still blocks a new call attempt.

    Active means: an offer exists, nobody ended it, and it is younger than
    the answer timeout (unanswered) or the maximum call duration (answered).
    """
    if session.offer is None or session.ended_at is not None:
        return False
    if session.created_at is None:
        return True
    now = now or datetime.now(timezone.utc)
    created = session.created_at
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    if session.answer is not None or session.answered_at is not None:
        limit = settings.CALL_MAX_DURATION_SECONDS
    else:
        limit = settings.CALL_ANSWER_TIMEOUT_SECONDS or settings.CALL_MAX_DURATION_SECONDS
    return (now - created).total_seconds() < limit


def _register(listeners: list, listener: Callable) -> Callable[[], None]:
    listeners.append(listener)

    def _remove() -> None:
        if listener in listeners:
            listeners.remove(listener)

    return _remove


def _default_peer_factory(ice_servers: list[dict]) -> PeerConnection:
    from app.rtc.aiortc_backend import create_peer_connection

    return create_peer_connection(ice_servers)


class CallSignalingEngine:
    """Offer/answer/ICE exchange for one local participant."""

    def __init__(
        self,
        store: DocumentStore,
        settings: Settings | None = None,
        peer_factory: PeerFactory | None = None,
        media_factory: MediaFactory | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self._peer_factory = peer_factory or _default_peer_factory
        self._media_factory = media_factory or self._open_microphone

        self.state: CallState = CallState.IDLE
        self.thread_id: Optional[str] = None
        self.local_uid: Optional[str] = None
        self.peer_uid: Optional[str] = None
        self.role: Optional[str] = None
        self.end_reason: Optional[str] = None
        self.last_error: Optional[Exception] = None

        self._pc: Optional[PeerConnection] = None
        self._media: Optional[LocalMedia] = None
        self._subscriptions: list[Subscription] = []
        self._tasks: set[asyncio.Task] = set()
        self._remote_applied = False
        self._pending_remote: list[IceCandidate] = []
        self._pending_local: Optional[list[IceCandidate]] = None
        self._local_candidates: Optional[str] = None
        self._ending = False
        # bumped by hangup/cleanup so an in-flight setup can tell it was torn down
        self._generation = 0

        self._state_listeners: list[StateListener] = []
        self._track_listeners: list[TrackListener] = []

    # ── Observers ─────────────────────────────────────────────────────────

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        """Register ``listener`` for state transitions; returns a remover."""
        return _register(self._state_listeners, listener)

    def on_remote_track(self, listener: TrackListener) -> Callable[[], None]:
        return _register(self._track_listeners, listener)

    @property
    def muted(self) -> bool:
        return self._media.muted if self._media is not None else False

    # ── Public API ────────────────────────────────────────────────────────

    async def start_call(self, thread_id: str, local_uid: str, peer_uid: str) -> None:
        """Place a call on ``thread_id`` and wait for the peer's answer."""
        if not thread_id or not local_uid or not peer_uid:
            raise InvalidInputError("thread_id, local_uid and peer_uid are required")
        if local_uid == peer_uid:
            raise InvalidInputError("Cannot call yourself", details={"uid": local_uid})
        self._require_idle()

        path = call_path(thread_id)
        log = logger.bind(thread_id=thread_id, local_uid=local_uid, peer_uid=peer_uid)
        log.info("start_call")
        self._bind(thread_id, local_uid, peer_uid, CALLER)
        generation = self._generation
        self._set_state(CallState.OFFERING)
        published = False

        try:
            snap = await self.store.get(path)
            self._ensure_live(generation)
            if snap.exists and is_session_active(CallSession.from_snapshot(snap), self.settings):
                raise CallBusyError(thread_id)
            await self._purge_candidates(thread_id)
            self._ensure_live(generation)

            pc = await self._open_peer(candidates_path(thread_id, OFFER_CANDIDATES), generation)
            offer = await pc.create_offer()
            self._ensure_live(generation)
            applied = await pc.set_local_description(offer)
            self._ensure_live(generation)

            async def _publish(tx: Transaction) -> None:
                self._ensure_live(generation)
                current = await tx.get(path)
                if current.exists and is_session_active(CallSession.from_snapshot(current), self.settings):
                    raise CallBusyError(thread_id)
                tx.set(
                    path,
                    {
                        "offer": {
                            "type": applied.type,
                            "sdp": applied.sdp,
                            "from": local_uid,
                            "to": peer_uid,
                        },
                        "createdAt": SERVER_TIMESTAMP,
                    },
                )

            await self.store.run_transaction(
                _publish, max_attempts=self.settings.TRANSACTION_MAX_ATTEMPTS
            )
            published = True
            self._ensure_live(generation)
            log.info("offer_published")
            await self._flush_local_candidates()
            self._ensure_live(generation)

            self._listen(self.store.subscribe_document(path), self._on_session_snapshot)
            self._listen(
                self.store.subscribe_query(Query(candidates_path(thread_id, ANSWER_CANDIDATES))),
                self._on_remote_candidates,
            )
            if self.state == CallState.OFFERING:
                self._set_state(CallState.AWAITING_ANSWER)
            self._start_answer_timer()
        except BaseException as exc:
            log.warning("start_call_failed", error=str(exc), error_type=type(exc).__name__)
            await self._abort_setup(exc, generation, path if published else None)
            raise

    async def answer_call(self, thread_id: str, local_uid: str) -> None:
        """Answer the pending offer on ``thread_id``."""
        if not thread_id or not local_uid:
            raise InvalidInputError("thread_id and local_uid are required")
        self._require_idle()

        path = call_path(thread_id)
        log = logger.bind(thread_id=thread_id, local_uid=local_uid)
        snap = await self.store.get(path)
        session = CallSession.from_snapshot(snap) if snap.exists else None
        if (
            session is None
            or session.offer is None
            or session.ended_at is not None
            or session.answer is not None
            or session.offer.from_uid == local_uid
        ):
            log.info("answer_call_no_offer")
            raise NoIncomingOfferError(thread_id)

        log.info("answer_call", peer_uid=session.offer.from_uid)
        self._bind(thread_id, local_uid, session.offer.from_uid, CALLEE)
        generation = self._generation
        self._set_state(CallState.ANSWERING)
        published = False

        try:
            pc = await self._open_peer(candidates_path(thread_id, ANSWER_CANDIDATES), generation)
            await self._apply_remote_description(session.offer.description())
            self._ensure_live(generation)
            answer = await pc.create_answer()
            self._ensure_live(generation)
            applied = await pc.set_local_description(answer)
            self._ensure_live(generation)
            await self.store.update(
                path,
                {
                    "answer": {
                        "type": applied.type,
                        "sdp": applied.sdp,
                        "from": local_uid,
                        "to": session.offer.from_uid,
                    },
                    "answeredAt": SERVER_TIMESTAMP,
                },
            )
            published = True
            self._ensure_live(generation)
            log.info("answer_published")
            await self._flush_local_candidates()
            self._ensure_live(generation)

            self._listen(
                self.store.subscribe_query(Query(candidates_path(thread_id, OFFER_CANDIDATES))),
                self._on_remote_candidates,
            )
            self._listen(self.store.subscribe_document(path), self._on_session_snapshot)
            self._start_answer_timer()
        except BaseException as exc:
            log.warning("answer_call_failed", error=str(exc), error_type=type(exc).__name__)
            await self._abort_setup(exc, generation, path if published else None)
            raise

    async def hangup(self, reason: str = "hangup") -> None:
        """End the call for both sides.  Never raises."""
        if self.state == CallState.IDLE or self._ending:
            return
        self._ending = True
        self._generation += 1
        thread_id = self.thread_id
        log = logger.bind(thread_id=thread_id, reason=reason)
        if thread_id:
            try:
                await self.store.set(
                    call_path(thread_id),
                    {"endedAt": SERVER_TIMESTAMP, "endReason": reason},
                    merge=True,
                )
            except Exception as exc:
                log.warning("hangup_write_failed", error=str(exc))
        log.info("call_hangup")
        self.end_reason = reason
        self._set_state(CallState.ENDED)
        await self.cleanup()

    def toggle_mute(self) -> bool:
        """Flip the local microphone's mute state; returns the new state."""
        if self._media is None:
            return False
        self._media.set_muted(not self._media.muted)
        logger.info("call_mute_toggled", thread_id=self.thread_id, muted=self._media.muted)
        return self._media.muted

    async def cleanup(self) -> None:
        """Release every listener, timer, track and the peer connection.

        Safe from any state and any number of times; always ends in IDLE.
        """
        self._generation += 1
        subscriptions, self._subscriptions = self._subscriptions, []
        for sub in subscriptions:
            try:
                sub.unsubscribe()
            except Exception as exc:
                logger.warning("call_unsubscribe_failed", error=str(exc))

        current = asyncio.current_task()
        tasks, self._tasks = self._tasks, set()
        for task in tasks:
            if task is not current:
                task.cancel()

        media, self._media = self._media, None
        if media is not None:
            try:
                media.stop()
            except Exception as exc:
                logger.warning("call_media_stop_failed", error=str(exc))

        pc, self._pc = self._pc, None
        if pc is not None:
            pc.on_ice_candidate = None
            pc.on_track = None
            pc.on_connection_state_change = None
            try:
                await pc.close()
            except Exception as exc:
                logger.warning("call_peer_close_failed", error=str(exc))

        had_call = self.thread_id is not None
        self.thread_id = None
        self.local_uid = None
        self.peer_uid = None
        self.role = None
        self._remote_applied = False
        self._pending_remote = []
        self._pending_local = None
        self._local_candidates = None
        self._ending = False
        if had_call:
            logger.debug("call_cleaned_up")
        self._set_state(CallState.IDLE)

    # ── Internals: setup ──────────────────────────────────────────────────

    async def _open_microphone(self) -> LocalMedia:
        from app.rtc.aiortc_backend import open_microphone

        return await open_microphone(self.settings)

    def _require_idle(self) -> None:
        if self.state != CallState.IDLE:
            raise InvalidInputError(
                "A call is already in progress on this device",
                details={"state": self.state.value, "thread_id": self.thread_id},
            )

    def _bind(self, thread_id: str, local_uid: str, peer_uid: Optional[str], role: str) -> None:
        self.thread_id = thread_id
        self.local_uid = local_uid
        self.peer_uid = peer_uid
        self.role = role
        self.end_reason = None
        self.last_error = None
        self._remote_applied = False
        self._pending_remote = []
        self._ending = False

    def _ensure_live(self, generation: int) -> None:
        """Abort a setup step once hangup/cleanup has run underneath it."""
        if generation != self._generation:
            raise CallFailedError("Call was ended during setup", details={"reason": self.end_reason or "hangup"})

    async def _abort_setup(self, exc: BaseException, generation: int, published_path: Optional[str]) -> None:
        if generation == self._generation:
            self.last_error = exc if isinstance(exc, Exception) else None
            await self.cleanup()
            return
        # already torn down; cleanup here could hit a newer call
        logger.info("call_setup_aborted", published=published_path is not None)
        if published_path is None:
            return
        try:
            await self.store.set(
                published_path,
                {"endedAt": SERVER_TIMESTAMP, "endReason": self.end_reason or "hangup"},
                merge=True,
            )
        except Exception as write_exc:
            logger.warning("hangup_write_failed", error=str(write_exc))

    async def _open_peer(self, local_candidates: str, generation: int) -> PeerConnection:
        try:
            media = await self._media_factory()
        except CallFailedError:
            raise
        except Exception as exc:
            raise CallFailedError("Could not acquire local audio", details={"error": str(exc)}) from exc
        if generation != self._generation:
            media.stop()
            self._ensure_live(generation)

        self._media = media
        self._pc = self._peer_factory(self.settings.ice_servers)
        self._local_candidates = local_candidates
        self._pending_local = []
        self._pc.on_ice_candidate = self._on_local_candidate
        self._pc.on_track = self._on_track
        self._pc.on_connection_state_change = self._on_connection_state
        for track in self._media.tracks:
            self._pc.add_track(track)
        return self._pc

    async def _purge_candidates(self, thread_id: str) -> None:
        """Remove the previous attempt's candidates before a new offer."""
        removed = 0
        for collection in (OFFER_CANDIDATES, ANSWER_CANDIDATES):
            for doc in await self.store.query(Query(candidates_path(thread_id, collection))):
                await self.store.delete(doc.path)
                removed += 1
        if removed:
            logger.debug("call_candidates_purged", thread_id=thread_id, removed=removed)

    # ── Internals: candidates ─────────────────────────────────────────────

    def _on_local_candidate(self, candidate: IceCandidate) -> None:
        if self._pending_local is not None:
            # offer/answer not published yet
            self._pending_local.append(candidate)
            return
        if self._local_candidates is not None:
            self._spawn(self._write_local_candidate(self._local_candidates, candidate))

    async def _flush_local_candidates(self) -> None:
        pending, self._pending_local = self._pending_local or [], None
        for candidate in pending:
            await self._write_local_candidate(self._local_candidates, candidate)

    async def _write_local_candidate(self, collection: str, candidate: IceCandidate) -> None:
        await self.store.add(collection, candidate.to_document())

    async def _on_remote_candidates(self, snapshot: QuerySnapshot) -> None:
        for doc in snapshot.added():
            try:
                candidate = IceCandidate.model_validate(doc.to_dict())
            except ValidationError as exc:
                logger.warning("ice_candidate_invalid", thread_id=self.thread_id, doc=doc.id, error=str(exc))
                continue
            if not self._remote_applied:
                self._pending_remote.append(candidate)
            else:
                await self._add_remote_candidate(candidate)

    async def _add_remote_candidate(self, candidate: IceCandidate) -> None:
        if self._pc is None:
            return
        try:
            await self._pc.add_ice_candidate(candidate)
        except Exception as exc:
            logger.warning(
                "ice_candidate_apply_failed",
                thread_id=self.thread_id,
                candidate=candidate.candidate,
                error=str(exc),
            )

    # ── Internals: remote description & session watch ─────────────────────

    async def _apply_remote_description(self, description: SessionDescription) -> None:
        if self._pc is None or self._remote_applied or self._pc.remote_description is not None:
            return
        self._remote_applied = True
        try:
            await self._pc.set_remote_description(description)
        except Exception as exc:
            raise CallFailedError(
                "Could not apply remote session description",
                details={"type": description.type, "error": str(exc)},
            ) from exc
        logger.info("remote_description_applied", thread_id=self.thread_id, type=description.type)
        pending, self._pending_remote = self._pending_remote, []
        for candidate in pending:
            await self._add_remote_candidate(candidate)

    async def _on_session_snapshot(self, snap: DocumentSnapshot) -> None:
        if not snap.exists:
            return
        session = CallSession.from_snapshot(snap)
        if session.ended_at is not None:
            await self._end_from_remote(session.end_reason or "hangup")
            return
        if self.role == CALLER and session.answer is not None and not self._remote_applied:
            try:
                await self._apply_remote_description(session.answer.description())
            except CallFailedError as exc:
                logger.error("call_answer_apply_failed", thread_id=self.thread_id, error=exc.message)
                self.last_error = exc
                await self.hangup("failed")

    async def _end_from_remote(self, reason: str) -> None:
        if self.state == CallState.IDLE or self._ending:
            return
        self._ending = True
        logger.info("call_ended_by_peer", thread_id=self.thread_id, reason=reason)
        self.end_reason = reason
        self._set_state(CallState.ENDED)
        await self.cleanup()

    # ── Internals: media events & timers ──────────────────────────────────

    def _on_track(self, track: Any) -> None:
        if self.state in (CallState.OFFERING, CallState.AWAITING_ANSWER, CallState.ANSWERING):
            self._set_state(CallState.CONNECTED)
        for listener in list(self._track_listeners):
            try:
                listener(track)
            except Exception as exc:
                logger.warning("remote_track_listener_failed", error=str(exc))

    def _on_connection_state(self, state: str) -> None:
        if state == "failed" and self.state != CallState.IDLE:
            self._spawn(self.hangup("connection_failed"))

    def _start_answer_timer(self) -> None:
        timeout = self.settings.CALL_ANSWER_TIMEOUT_SECONDS
        if not timeout or self.state == CallState.CONNECTED:
            return

        async def _expire() -> None:
            await asyncio.sleep(timeout)
            if self.state in (CallState.AWAITING_ANSWER, CallState.ANSWERING):
                logger.info("call_answer_timeout", thread_id=self.thread_id, timeout=timeout)
                await self.hangup("timeout")

        self._spawn(_expire())

    # ── Internals: plumbing ───────────────────────────────────────────────

    def _listen(self, subscription: Subscription, handler: Callable[[Any], Awaitable[None]]) -> None:
        self._subscriptions.append(subscription)

        async def _consume() -> None:
            try:
                async for item in subscription:
                    await handler(item)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("call_listener_failed", thread_id=self.thread_id, error=str(exc))

        self._spawn(_consume())

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _set_state(self, state: CallState) -> None:
        if state == self.state:
            return
        previous, self.state = self.state, state
        logger.debug("call_state_changed", thread_id=self.thread_id, previous=previous.value, state=state.value)
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as exc:
                logger.warning("call_state_listener_failed", error=str(exc))
