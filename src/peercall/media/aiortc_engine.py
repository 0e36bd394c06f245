"""aiortc implementation of the media engine and local media acquisition.

aiortc gathers ICE candidates into the local description instead of
trickling them, so ``LocalCandidateGenerated`` is never emitted here;
the full candidate set travels inside the offer/answer SDP.
"""

from __future__ import annotations

import asyncio
import glob
import logging
from fractions import Fraction
from pathlib import Path
from typing import Any

import av
from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp

from peercall.errors import NegotiationError
from peercall.media.engine import (
    ConnectivityState,
    ConnectivityStateChanged,
    EngineEventSink,
    LocalMedia,
    MediaConstraints,
    RemoteTrackAdded,
    VideoDevice,
)
from peercall.signaling.message import IceCandidate, SessionDescription

logger = logging.getLogger(__name__)


def ice_servers_to_rtc(servers: list[dict[str, Any]]) -> list[RTCIceServer]:
    """Convert ICE server dicts to RTCIceServer objects."""
    result = []
    for s in servers:
        urls = s.get("urls", s.get("url", ""))
        if isinstance(urls, str):
            urls = [urls]
        result.append(
            RTCIceServer(
                urls=urls,
                username=s.get("username"),
                credential=s.get("credential"),
            )
        )
    return result


class SwitchableTrack(MediaStreamTrack):
    """Relays a source track, substituting silence/black frames while disabled."""

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self.enabled = True
        self._source = source

    async def recv(self) -> Any:
        frame = await self._source.recv()
        if self.enabled:
            return frame
        if self.kind == "audio":
            blank = av.AudioFrame(
                format=frame.format.name,
                layout=frame.layout.name,
                samples=frame.samples,
            )
            for plane in blank.planes:
                plane.update(bytes(plane.buffer_size))
            blank.sample_rate = frame.sample_rate
        else:
            blank = av.VideoFrame(frame.width, frame.height, "yuv420p")
            luma, *chroma = blank.planes
            luma.update(bytes(luma.buffer_size))
            for plane in chroma:
                plane.update(b"\x80" * plane.buffer_size)
        blank.pts = frame.pts
        blank.time_base = frame.time_base or Fraction(1, 90000)
        return blank

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class AiortcMediaEngine:
    """Drives one RTCPeerConnection per call."""

    async def create_connection(
        self, ice_servers: list[dict[str, Any]], on_event: EngineEventSink
    ) -> RTCPeerConnection:
        rtc_servers = ice_servers_to_rtc(ice_servers)
        config = (
            RTCConfiguration(iceServers=rtc_servers) if rtc_servers else RTCConfiguration()
        )
        pc = RTCPeerConnection(configuration=config)

        @pc.on("connectionstatechange")
        async def on_conn_state() -> None:
            logger.info("Connection state: %s", pc.connectionState)
            on_event(ConnectivityStateChanged(pc, ConnectivityState(pc.connectionState)))

        @pc.on("track")
        def on_track(track: MediaStreamTrack) -> None:
            logger.info("Received remote %s track", track.kind)
            on_event(RemoteTrackAdded(pc, track))

        return pc

    async def create_offer(self, handle: RTCPeerConnection) -> SessionDescription:
        offer = await _negotiate(handle.createOffer)
        return SessionDescription(sdp=offer.sdp, type=offer.type)

    async def create_answer(self, handle: RTCPeerConnection) -> SessionDescription:
        answer = await _negotiate(handle.createAnswer)
        return SessionDescription(sdp=answer.sdp, type=answer.type)

    async def set_local_description(
        self, handle: RTCPeerConnection, description: SessionDescription
    ) -> SessionDescription:
        # aiortc completes ICE gathering here; the installed description
        # carries the candidates and is the one that must be sent.
        await _negotiate(
            handle.setLocalDescription,
            RTCSessionDescription(sdp=description.sdp, type=description.type),
        )
        local = handle.localDescription
        return SessionDescription(sdp=local.sdp, type=local.type)

    async def set_remote_description(
        self, handle: RTCPeerConnection, description: SessionDescription
    ) -> None:
        await _negotiate(
            handle.setRemoteDescription,
            RTCSessionDescription(sdp=description.sdp, type=description.type),
        )

    async def add_local_track(self, handle: RTCPeerConnection, track: Any) -> None:
        handle.addTrack(track)

    async def replace_local_track(
        self, handle: RTCPeerConnection, old: Any, new: Any
    ) -> None:
        for sender in handle.getSenders():
            if sender.track is old:
                sender.replaceTrack(new)
                return
        handle.addTrack(new)

    async def add_remote_candidate(
        self, handle: RTCPeerConnection, candidate: IceCandidate
    ) -> None:
        sdp = candidate.candidate
        if not sdp:
            return  # end-of-candidates marker
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:") :]
        # candidate_from_sdp asserts on too few fields
        try:
            rtc_candidate = candidate_from_sdp(sdp)
        except (AssertionError, ValueError, IndexError) as exc:
            raise NegotiationError(f"Unparseable candidate {sdp!r}: {exc}") from exc
        rtc_candidate.sdpMid = candidate.sdp_mid
        rtc_candidate.sdpMLineIndex = candidate.sdp_mline_index
        await _negotiate(handle.addIceCandidate, rtc_candidate)

    async def close(self, handle: RTCPeerConnection) -> None:
        await handle.close()
        logger.info("Peer connection closed")


async def _negotiate(step: Any, *args: Any) -> Any:
    try:
        return await step(*args)
    except (ValueError, RuntimeError) as exc:
        raise NegotiationError(str(exc)) from exc


def _release(player: MediaPlayer) -> None:
    for track in (player.audio, player.video):
        if track is not None:
            track.stop()


class AiortcMediaAcquisition:
    """Captures camera and microphone through ffmpeg devices via MediaPlayer."""

    def __init__(
        self,
        *,
        video_format: str = "v4l2",
        audio_device: str = "default",
        audio_format: str = "pulse",
        device_glob: str = "/dev/video*",
    ) -> None:
        self._video_format = video_format
        self._audio_device = audio_device
        self._audio_format = audio_format
        self._device_glob = device_glob

    async def acquire_local_media(self, constraints: MediaConstraints) -> LocalMedia:
        loop = asyncio.get_running_loop()
        media = LocalMedia()
        try:
            if constraints.video:
                device_id = constraints.device_id or await self._default_video_device()
                player = await loop.run_in_executor(
                    None,
                    lambda: MediaPlayer(
                        device_id,
                        format=self._video_format,
                        options={"video_size": f"{constraints.width}x{constraints.height}"},
                    ),
                )
                if player.video is None:
                    _release(player)
                    raise NegotiationError(f"No video stream on {device_id}")
                media.video_track = SwitchableTrack(player.video)
                media.device_id = device_id
            if constraints.audio:
                player = await loop.run_in_executor(
                    None,
                    lambda: MediaPlayer(self._audio_device, format=self._audio_format),
                )
                if player.audio is None:
                    _release(player)
                    raise NegotiationError(f"No audio stream on {self._audio_device}")
                media.audio_track = SwitchableTrack(player.audio)
        except BaseException:
            # Partial capture: release whatever was opened before re-raising
            for track in media.tracks:
                track.stop()
            raise
        logger.info(
            "Acquired local media (audio=%s, video=%s)",
            media.audio_track is not None,
            media.device_id or None,
        )
        return media

    async def enumerate_video_devices(self) -> list[VideoDevice]:
        return [
            VideoDevice(device_id=path, label=Path(path).name)
            for path in sorted(glob.glob(self._device_glob))
        ]

    async def stop_track(self, track: Any) -> None:
        track.stop()

    async def _default_video_device(self) -> str:
        # Front-facing camera is the first enumerated device
        devices = await self.enumerate_video_devices()
        if not devices:
            raise NegotiationError("No video capture device found")
        return devices[0].device_id
