"""Test doubles for the call-signaling media stack, plus a polling helper."""
import asyncio
import itertools
from typing import Optional

from app.models.call import IceCandidate, SessionDescription
from app.rtc.peer import LocalMedia, PeerConnection


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


_candidate_ports = itertools.count(50000)


class FakeTrack:
    kind = "audio"

    def __init__(self, label: str) -> None:
        self.label = label


class FakePeerConnection(PeerConnection):
    """Records every call; fires ``on_track`` when a remote description lands."""

    def __init__(self, ice_servers: list[dict], fail_remote: bool = False, fail_candidates: bool = False):
        super().__init__()
        self.ice_servers = ice_servers
        self.fail_remote = fail_remote
        self.fail_candidates = fail_candidates
        self.tracks: list = []
        self.local: Optional[SessionDescription] = None
        self._remote: Optional[SessionDescription] = None
        self.remote_set_count = 0
        self.added_candidates: list[IceCandidate] = []
        self.closed = False

    def add_track(self, track) -> None:
        self.tracks.append(track)

    async def create_offer(self) -> SessionDescription:
        await asyncio.sleep(0)
        return SessionDescription(type="offer", sdp=f"v=0\r\no=- {id(self)} offer\r\n")

    async def create_answer(self) -> SessionDescription:
        await asyncio.sleep(0)
        if self._remote is None:
            raise RuntimeError("createAnswer before setRemoteDescription")
        return SessionDescription(type="answer", sdp=f"v=0\r\no=- {id(self)} answer\r\n")

    async def set_local_description(self, description: SessionDescription) -> SessionDescription:
        await asyncio.sleep(0)
        self.local = description
        port = next(_candidate_ports)
        if self.on_ice_candidate is not None:
            self.on_ice_candidate(
                IceCandidate(
                    candidate=f"candidate:1 1 udp 2122260223 10.0.0.1 {port} typ host",
                    sdp_mid="0",
                    sdp_mline_index=0,
                )
            )
        return description

    async def set_remote_description(self, description: SessionDescription) -> None:
        await asyncio.sleep(0)
        self.remote_set_count += 1
        if self.fail_remote:
            raise RuntimeError("malformed remote description")
        self._remote = description
        if self.on_track is not None:
            self.on_track(FakeTrack(f"remote-{description.type}"))

    @property
    def remote_description(self) -> Optional[SessionDescription]:
        return self._remote

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        await asyncio.sleep(0)
        if self.fail_candidates:
            raise ValueError("unparseable candidate")
        self.added_candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True


class FakeMedia(LocalMedia):
    def __init__(self) -> None:
        self._tracks = [FakeTrack("mic")]
        self._muted = False
        self.stop_count = 0

    @property
    def tracks(self) -> list:
        return self._tracks

    @property
    def muted(self) -> bool:
        return self._muted

    def set_muted(self, muted: bool) -> None:
        self._muted = muted

    def stop(self) -> None:
        self.stop_count += 1


class FakeRtc:
    """Factories for ``CallSignalingEngine`` that remember what they built."""

    def __init__(self, fail_remote: bool = False, fail_candidates: bool = False, fail_media: bool = False):
        self.fail_remote = fail_remote
        self.fail_candidates = fail_candidates
        self.fail_media = fail_media
        self.peers: list[FakePeerConnection] = []
        self.media: list[FakeMedia] = []

    def peer_factory(self, ice_servers: list[dict]) -> FakePeerConnection:
        pc = FakePeerConnection(ice_servers, self.fail_remote, self.fail_candidates)
        self.peers.append(pc)
        return pc

    async def media_factory(self) -> FakeMedia:
        if self.fail_media:
            raise OSError("no audio input device")
        media = FakeMedia()
        self.media.append(media)
        return media

    @property
    def pc(self) -> FakePeerConnection:
        return self.peers[-1]
