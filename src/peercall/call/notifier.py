"""Session snapshots and the observers that consume them."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from typing import Any

from peercall.call.session import CallPhase, CallRole, EndReason

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class CallSnapshot:
    """Read-only projection of the call session published after each transition."""

    phase: CallPhase = CallPhase.IDLE
    local_id: str = ""
    peer_id: str | None = None
    role: CallRole | None = None
    has_local_media: bool = False
    has_remote_media: bool = False
    muted: bool = False
    video_enabled: bool = True
    end_reason: EndReason | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": str(self.phase),
            "local_id": self.local_id,
            "peer_id": self.peer_id,
            "role": str(self.role) if self.role else None,
            "has_local_media": self.has_local_media,
            "has_remote_media": self.has_remote_media,
            "muted": self.muted,
            "video_enabled": self.video_enabled,
            "end_reason": str(self.end_reason) if self.end_reason else None,
            "error": self.error,
        }


Observer = Callable[[CallSnapshot], None]


class CallNotifier:
    def __init__(self, local_id: str = "") -> None:
        self._snapshot = CallSnapshot(local_id=local_id)
        self._observers: list[Observer] = []
        self.published = 0

    @property
    def snapshot(self) -> CallSnapshot:
        return self._snapshot

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def publish(self, snapshot: CallSnapshot) -> bool:
        """Store and fan out *snapshot*; returns False if nothing changed."""
        if snapshot == self._snapshot:
            return False
        self._snapshot = snapshot
        self.published += 1
        logger.debug("Snapshot: %s", snapshot)
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception:
                logger.exception("Call observer %r failed", observer)
        return True


class RingingObserver:
    """Starts ringing on entering receivingCall and stops on leaving it."""

    def __init__(
        self, start: Callable[[str], None], stop: Callable[[], None]
    ) -> None:
        self._start = start
        self._stop = stop
        self.ringing = False

    def __call__(self, snapshot: CallSnapshot) -> None:
        if snapshot.phase == CallPhase.RECEIVING_CALL:
            if not self.ringing:
                self.ringing = True
                self._start(snapshot.peer_id or "")
        elif self.ringing:
            self.ringing = False
            self._stop()
