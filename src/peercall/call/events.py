"""Events consumed by the CallController's actor queue.

Local user actions, inbound signaling messages, timer expiries, transport
state changes and media-engine notifications all arrive as one of these
and are processed strictly one at a time.
"""

from __future__ import annotations

import asyncio
import dataclasses

from peercall.media.engine import EngineEvent
from peercall.signaling.message import SignalingMessage
from peercall.transport.base import TransportState


@dataclasses.dataclass(frozen=True)
class StartCall:
    peer_id: str


@dataclasses.dataclass(frozen=True)
class AcceptCall:
    pass


@dataclasses.dataclass(frozen=True)
class RejectCall:
    pass


@dataclasses.dataclass(frozen=True)
class EndCall:
    pass


@dataclasses.dataclass(frozen=True)
class ToggleMute:
    muted: bool | None = None  # None flips


@dataclasses.dataclass(frozen=True)
class ToggleVideo:
    enabled: bool | None = None


@dataclasses.dataclass(frozen=True)
class SwitchCamera:
    pass


@dataclasses.dataclass(frozen=True)
class InboundMessage:
    message: SignalingMessage


@dataclasses.dataclass(frozen=True)
class DeadlineElapsed:
    generation: int


@dataclasses.dataclass(frozen=True)
class TransportStateChanged:
    state: TransportState


ControllerEvent = (
    StartCall
    | AcceptCall
    | RejectCall
    | EndCall
    | ToggleMute
    | ToggleVideo
    | SwitchCamera
    | InboundMessage
    | DeadlineElapsed
    | TransportStateChanged
    | EngineEvent
)


@dataclasses.dataclass
class Envelope:
    """A queued event plus the future a waiting caller resolves on."""

    event: ControllerEvent
    future: asyncio.Future[bool] | None = None
