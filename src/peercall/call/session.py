"""Call session aggregate owned by the CallController."""

from __future__ import annotations

import asyncio
import dataclasses
from enum import StrEnum
from typing import Any

from peercall.media.engine import LocalMedia
from peercall.signaling.message import IceCandidate, SessionDescription


class CallPhase(StrEnum):
    IDLE = "idle"
    CALLING = "calling"  # local party sent an offer, awaiting answer
    RECEIVING_CALL = "receivingCall"  # remote offer pending local accept/reject
    IN_CALL = "inCall"
    ENDED = "ended"  # transient, folds back to IDLE inside cleanup


class CallRole(StrEnum):
    CALLER = "caller"
    CALLEE = "callee"


class EndReason(StrEnum):
    HANGUP = "hangup"
    REMOTE_HANGUP = "remote_hangup"
    REJECTED = "rejected"
    DECLINED = "declined"
    TIMEOUT = "timeout"
    MISSED = "missed"
    PERMISSION_DENIED = "permission_denied"
    FAILED = "failed"
    SEND_FAILED = "send_failed"
    CONNECTION_LOST = "connection_lost"


@dataclasses.dataclass
class CallSession:
    """The single active or pending session. Mutated in place, never replaced."""

    phase: CallPhase = CallPhase.IDLE
    peer_id: str | None = None
    role: CallRole | None = None
    remote_offer: SessionDescription | None = None
    connection: Any | None = None
    local_media: LocalMedia | None = None
    remote_stream: Any | None = None
    remote_description_set: bool = False
    pending_candidates: list[IceCandidate] = dataclasses.field(default_factory=list)
    deadline: asyncio.TimerHandle | None = None
    muted: bool = False
    video_enabled: bool = True
    # Bumped for every new session so timers and engine events from an
    # earlier session can be recognised as stale.
    generation: int = 0

    def matches(self, peer_id: str) -> bool:
        return self.phase != CallPhase.IDLE and peer_id == self.peer_id

    def is_clear(self) -> bool:
        """True when there is nothing left to release."""
        return (
            self.phase == CallPhase.IDLE
            and self.peer_id is None
            and self.connection is None
            and self.local_media is None
            and self.deadline is None
        )

    def reset(self) -> None:
        self.phase = CallPhase.IDLE
        self.peer_id = None
        self.role = None
        self.remote_offer = None
        self.connection = None
        self.local_media = None
        self.remote_stream = None
        self.remote_description_set = False
        self.pending_candidates = []
        self.deadline = None
        self.muted = False
        self.video_enabled = True
