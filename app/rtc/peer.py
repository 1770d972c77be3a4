"""
Amora — Peer-connection and local-media interfaces.

``CallSignalingEngine`` drives a call through these two small interfaces and
never touches a WebRTC library directly.  The production implementation
(``app.rtc.aiortc_backend``) wraps ``aiortc``; tests plug in fakes.

Callbacks set on a ``PeerConnection`` are plain synchronous callables:

  * ``on_ice_candidate(candidate: IceCandidate)`` for every local candidate
    gathered after ``set_local_description``;
  * ``on_track(track)`` when a remote media track arrives;
  * ``on_connection_state_change(state: str)`` with the WebRTC connection
    state (``"connected"``, ``"failed"``, ``"closed"``, ...).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from app.models.call import IceCandidate, SessionDescription

IceCandidateHandler = Callable[[IceCandidate], None]
TrackHandler = Callable[[Any], None]
ConnectionStateHandler = Callable[[str], None]


class PeerConnection(ABC):
    """One side of a peer-to-peer audio session."""

    def __init__(self) -> None:
        self.on_ice_candidate: Optional[IceCandidateHandler] = None
        self.on_track: Optional[TrackHandler] = None
        self.on_connection_state_change: Optional[ConnectionStateHandler] = None

    @abstractmethod
    def add_track(self, track: Any) -> None: ...

    @abstractmethod
    async def create_offer(self) -> SessionDescription: ...

    @abstractmethod
    async def create_answer(self) -> SessionDescription: ...

    @abstractmethod
    async def set_local_description(self, description: SessionDescription) -> SessionDescription:
        """Apply ``description`` locally and return the description as applied.

        Implementations that gather candidates up front return an SDP that
        already embeds them.
        """

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None: ...

    @property
    @abstractmethod
    def remote_description(self) -> Optional[SessionDescription]: ...

    @abstractmethod
    async def add_ice_candidate(self, candidate: IceCandidate) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...


class LocalMedia(ABC):
    """Captured local audio."""

    @property
    @abstractmethod
    def tracks(self) -> list[Any]: ...

    @property
    @abstractmethod
    def muted(self) -> bool: ...

    @abstractmethod
    def set_muted(self, muted: bool) -> None: ...

    @abstractmethod
    def stop(self) -> None:
        """Release the capture device.  Safe to call more than once."""


PeerFactory = Callable[[list[dict]], PeerConnection]
MediaFactory = Callable[[], Awaitable[LocalMedia]]
