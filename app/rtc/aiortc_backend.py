"""
Amora — aiortc implementation of the peer-connection interfaces.

aiortc gathers ICE candidates inside ``setLocalDescription`` instead of
trickling them, so after the local description is applied the gathered
``a=candidate`` lines are read back out of its SDP and reported through
``on_ice_candidate`` one by one.  Remote peers (browsers, mobile clients)
still trickle theirs; those arrive through ``add_ice_candidate``.
"""

from __future__ import annotations

from typing import Any, Optional

import structlog
from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp

from app.config import Settings, get_settings
from app.exceptions import CallFailedError
from app.models.call import IceCandidate, SessionDescription
from app.rtc.peer import LocalMedia, PeerConnection

logger = structlog.get_logger("amora.rtc")


def candidates_from_sdp(sdp: str) -> list[IceCandidate]:
    """Extract ``a=candidate`` lines with their m-line index and mid."""
    candidates: list[IceCandidate] = []
    mline_index = -1
    mid: Optional[str] = None
    for raw in sdp.splitlines():
        line = raw.strip()
        if line.startswith("m="):
            mline_index += 1
            mid = None
        elif line.startswith("a=mid:"):
            mid = line[len("a=mid:"):]
        elif line.startswith("a=candidate:"):
            candidates.append(
                IceCandidate(
                    candidate=line[len("a="):],
                    sdp_mid=mid if mid is not None else str(max(mline_index, 0)),
                    sdp_mline_index=max(mline_index, 0),
                )
            )
    return candidates


def _to_rtc(description: SessionDescription) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=description.sdp, type=description.type)


def _from_rtc(description: Optional[RTCSessionDescription]) -> Optional[SessionDescription]:
    if description is None:
        return None
    return SessionDescription(type=description.type, sdp=description.sdp)


class AiortcPeerConnection(PeerConnection):
    def __init__(self, ice_servers: list[dict]) -> None:
        super().__init__()
        config = RTCConfiguration(
            iceServers=[
                RTCIceServer(
                    urls=server["urls"],
                    username=server.get("username") or None,
                    credential=server.get("credential") or None,
                )
                for server in ice_servers
            ]
        )
        self._pc = RTCPeerConnection(configuration=config)

        @self._pc.on("track")
        def _on_track(track: MediaStreamTrack) -> None:
            logger.info("remote_track_received", kind=track.kind)
            if self.on_track is not None:
                self.on_track(track)

        @self._pc.on("connectionstatechange")
        def _on_state() -> None:
            state = self._pc.connectionState
            logger.info("peer_connection_state", state=state)
            if self.on_connection_state_change is not None:
                self.on_connection_state_change(state)

    def add_track(self, track: Any) -> None:
        self._pc.addTrack(track)

    async def create_offer(self) -> SessionDescription:
        return _from_rtc(await self._pc.createOffer())

    async def create_answer(self) -> SessionDescription:
        return _from_rtc(await self._pc.createAnswer())

    async def set_local_description(self, description: SessionDescription) -> SessionDescription:
        await self._pc.setLocalDescription(_to_rtc(description))
        applied = _from_rtc(self._pc.localDescription) or description
        if self.on_ice_candidate is not None:
            for candidate in candidates_from_sdp(applied.sdp):
                self.on_ice_candidate(candidate)
        return applied

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(_to_rtc(description))

    @property
    def remote_description(self) -> Optional[SessionDescription]:
        return _from_rtc(self._pc.remoteDescription)

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        sdp = candidate.candidate
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]
        if not sdp:
            # end-of-candidates marker
            return
        rtc_candidate = candidate_from_sdp(sdp)
        rtc_candidate.sdpMid = candidate.sdp_mid
        rtc_candidate.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(rtc_candidate)

    async def close(self) -> None:
        await self._pc.close()


class MutableAudioTrack(MediaStreamTrack):
    """Relays a source audio track, replacing frames with silence while muted."""

    kind = "audio"

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self._source = source
        self.muted = False

    async def recv(self):
        frame = await self._source.recv()
        if self.muted:
            for plane in frame.planes:
                plane.update(bytes(plane.buffer_size))
        return frame

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class MicrophoneMedia(LocalMedia):
    def __init__(self, device: str, input_format: Optional[str] = None) -> None:
        self._player = MediaPlayer(device, format=input_format or None)
        if self._player.audio is None:
            raise CallFailedError("Audio input has no audio track", details={"device": device})
        self._track = MutableAudioTrack(self._player.audio)
        self._stopped = False

    @property
    def tracks(self) -> list[Any]:
        return [self._track]

    @property
    def muted(self) -> bool:
        return self._track.muted

    def set_muted(self, muted: bool) -> None:
        self._track.muted = muted

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._track.stop()


def create_peer_connection(ice_servers: list[dict]) -> PeerConnection:
    return AiortcPeerConnection(ice_servers)


async def open_microphone(settings: Settings | None = None) -> LocalMedia:
    settings = settings or get_settings()
    try:
        return MicrophoneMedia(settings.AUDIO_INPUT_DEVICE, settings.AUDIO_INPUT_FORMAT)
    except CallFailedError:
        raise
    except Exception as exc:
        raise CallFailedError(
            "Could not open audio input",
            details={"device": settings.AUDIO_INPUT_DEVICE, "error": str(exc)},
        ) from exc
