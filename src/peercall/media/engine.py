"""Media engine and media acquisition contracts.

The call controller never touches a peer connection directly; it drives
one of these capability sets and receives engine notifications as event
objects through the sink passed to ``create_connection``.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from enum import StrEnum
from typing import Any, Protocol

from peercall.signaling.message import IceCandidate, SessionDescription


class ConnectivityState(StrEnum):
    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


@dataclasses.dataclass(frozen=True)
class LocalCandidateGenerated:
    handle: Any
    candidate: IceCandidate


@dataclasses.dataclass(frozen=True)
class RemoteTrackAdded:
    handle: Any
    stream: Any


@dataclasses.dataclass(frozen=True)
class ConnectivityStateChanged:
    handle: Any
    state: ConnectivityState


EngineEvent = LocalCandidateGenerated | RemoteTrackAdded | ConnectivityStateChanged
EngineEventSink = Callable[[EngineEvent], None]


@dataclasses.dataclass(frozen=True)
class MediaConstraints:
    audio: bool = True
    video: bool = True
    facing_mode: str = "user"
    device_id: str | None = None
    width: int = 1280
    height: int = 720


@dataclasses.dataclass(frozen=True)
class VideoDevice:
    device_id: str
    label: str = ""


@dataclasses.dataclass
class LocalMedia:
    """Locally captured tracks. Tracks expose ``kind`` and a mutable ``enabled``."""

    audio_track: Any | None = None
    video_track: Any | None = None
    device_id: str = ""

    @property
    def tracks(self) -> list[Any]:
        return [t for t in (self.audio_track, self.video_track) if t is not None]


class MediaEngine(Protocol):
    async def create_connection(
        self, ice_servers: list[dict[str, Any]], on_event: EngineEventSink
    ) -> Any: ...

    async def create_offer(self, handle: Any) -> SessionDescription: ...

    async def create_answer(self, handle: Any) -> SessionDescription: ...

    async def set_local_description(
        self, handle: Any, description: SessionDescription
    ) -> SessionDescription:
        """Install *description*; return the description to send to the peer."""
        ...

    async def set_remote_description(
        self, handle: Any, description: SessionDescription
    ) -> None: ...

    async def add_local_track(self, handle: Any, track: Any) -> None: ...

    async def replace_local_track(self, handle: Any, old: Any, new: Any) -> None: ...

    async def add_remote_candidate(self, handle: Any, candidate: IceCandidate) -> None: ...

    async def close(self, handle: Any) -> None: ...


class MediaAcquisition(Protocol):
    async def acquire_local_media(self, constraints: MediaConstraints) -> LocalMedia: ...

    async def enumerate_video_devices(self) -> list[VideoDevice]: ...

    async def stop_track(self, track: Any) -> None: ...
