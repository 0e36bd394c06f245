"""Camera/microphone permission gates."""

from __future__ import annotations

import glob
import logging
import os
from typing import Protocol

logger = logging.getLogger(__name__)


class PermissionGate(Protocol):
    async def has_required_permissions(self) -> bool: ...

    async def request_required_permissions(self) -> bool: ...


class StaticPermissionGate:
    """Answers every check with a fixed result."""

    def __init__(self, granted: bool = True) -> None:
        self.granted = granted
        self.requests = 0

    async def has_required_permissions(self) -> bool:
        return self.granted

    async def request_required_permissions(self) -> bool:
        self.requests += 1
        return self.granted


class DevicePermissionGate:
    """Checks that the process can open capture devices.

    There is no prompt to show on a server, so a request is just a
    re-check of the device nodes.
    """

    def __init__(
        self,
        video_pattern: str = "/dev/video*",
        audio_pattern: str = "/dev/snd/pcmC*D*c",
        *,
        require_video: bool = True,
    ) -> None:
        self._video_pattern = video_pattern
        self._audio_pattern = audio_pattern
        self._require_video = require_video

    def _accessible(self, pattern: str) -> bool:
        return any(os.access(path, os.R_OK | os.W_OK) for path in glob.glob(pattern))

    async def has_required_permissions(self) -> bool:
        video = self._accessible(self._video_pattern) or not self._require_video
        audio = self._accessible(self._audio_pattern)
        if not (video and audio):
            logger.debug("Capture devices not accessible (video=%s audio=%s)", video, audio)
        return video and audio

    async def request_required_permissions(self) -> bool:
        granted = await self.has_required_permissions()
        if not granted:
            logger.warning("Camera/microphone access denied")
        return granted
