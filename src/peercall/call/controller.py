"""Call session controller.

One actor per endpoint: local actions, inbound signaling, deadline
expiries, transport state and media-engine notifications are queued as
events and handled strictly one at a time, so a handler that awaits the
media engine or the transport never lets another event observe a
half-made transition. Every exit from a non-idle phase goes through
``_clean_up_call``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from peercall.call.events import (
    AcceptCall,
    ControllerEvent,
    DeadlineElapsed,
    EndCall,
    Envelope,
    InboundMessage,
    RejectCall,
    StartCall,
    SwitchCamera,
    ToggleMute,
    ToggleVideo,
    TransportStateChanged,
)
from peercall.call.notifier import CallNotifier, CallSnapshot
from peercall.call.session import CallPhase, CallRole, CallSession, EndReason
from peercall.errors import NegotiationError, PermissionDenied, SendError, TransportError
from peercall.media.engine import (
    ConnectivityState,
    ConnectivityStateChanged,
    LocalCandidateGenerated,
    MediaAcquisition,
    MediaConstraints,
    MediaEngine,
    RemoteTrackAdded,
)
from peercall.permissions import PermissionGate
from peercall.signaling.channel import Listener, SignalingChannel
from peercall.signaling.message import IceCandidate, MessageType, SignalingMessage
from peercall.transport.base import TransportState

logger = logging.getLogger(__name__)

CALL_TIMEOUT = 30.0
DEFAULT_ICE_SERVERS: list[dict[str, Any]] = [{"urls": "stun:stun.l.google.com:19302"}]

_Handler = Callable[[Any], Awaitable[bool]]
_MessageHandler = Callable[[SignalingMessage], Awaitable[bool]]


def _cancel(handle: asyncio.TimerHandle | None) -> None:
    if handle is not None:
        handle.cancel()


class CallController:
    def __init__(
        self,
        local_id: str,
        channel: SignalingChannel,
        engine: MediaEngine,
        media: MediaAcquisition,
        permissions: PermissionGate,
        notifier: CallNotifier | None = None,
        *,
        ice_servers: list[dict[str, Any]] | None = None,
        call_timeout: float = CALL_TIMEOUT,
        incoming_call_timeout: float | None = None,
        constraints: MediaConstraints | None = None,
    ) -> None:
        self._local_id = local_id
        self._channel = channel
        self._engine = engine
        self._media = media
        self._permissions = permissions
        self.notifier = notifier or CallNotifier(local_id)
        self._ice_servers = DEFAULT_ICE_SERVERS if ice_servers is None else ice_servers
        self._call_timeout = call_timeout
        self._incoming_call_timeout = incoming_call_timeout
        self._constraints = constraints or MediaConstraints()

        self._session = CallSession()
        self._end_reason: EndReason | None = None
        self._error: str | None = None
        self._queue: asyncio.Queue[Envelope | None] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._listeners: list[Listener[Any]] = []
        self._closed = False

        self._handlers: dict[type, _Handler] = {
            StartCall: self._handle_start_call,
            AcceptCall: self._handle_accept,
            RejectCall: self._handle_reject,
            EndCall: self._handle_end,
            ToggleMute: self._handle_toggle_mute,
            ToggleVideo: self._handle_toggle_video,
            SwitchCamera: self._handle_switch_camera,
            InboundMessage: self._handle_inbound,
            DeadlineElapsed: self._handle_deadline,
            TransportStateChanged: self._handle_transport_state,
            LocalCandidateGenerated: self._handle_local_candidate,
            RemoteTrackAdded: self._handle_remote_track,
            ConnectivityStateChanged: self._handle_connectivity,
        }
        self._message_handlers: dict[MessageType, _MessageHandler] = {
            MessageType.OFFER: self._on_offer,
            MessageType.ANSWER: self._on_answer,
            MessageType.CANDIDATE: self._on_candidate,
            MessageType.CALL_REQUEST: self._on_call_request,
            MessageType.CALL_ACCEPTED: self._on_call_accepted,
            MessageType.CALL_REJECTED: self._on_call_rejected,
            MessageType.END_CALL: self._on_end_call,
        }

    @property
    def local_id(self) -> str:
        return self._local_id

    @property
    def snapshot(self) -> CallSnapshot:
        return self.notifier.snapshot

    @property
    def session(self) -> CallSession:
        return self._session

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        """Subscribe to the channel and start the actor task."""
        if self._task is not None:
            return
        if self._closed:
            raise RuntimeError("CallController is closed")
        for msg_type in MessageType:
            self._listeners.append(
                self._channel.stream(msg_type).listen(
                    lambda msg: self._post(InboundMessage(msg))
                )
            )
        self._listeners.append(
            self._channel.state.listen(lambda state: self._post(TransportStateChanged(state)))
        )
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"call-controller-{self._local_id}"
        )
        self._publish()
        logger.info("Call controller started for %s", self._local_id)

    async def close(self) -> None:
        """Hang up any active call and stop the actor. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for listener in self._listeners:
            listener.cancel()
        self._listeners.clear()
        if self._task is not None:
            self._queue.put_nowait(None)
            await self._task
            self._task = None
        while not self._queue.empty():
            envelope = self._queue.get_nowait()
            if envelope is not None and envelope.future is not None:
                if not envelope.future.done():
                    envelope.future.set_result(False)
        if not self._session.is_clear():
            await self._abort(EndReason.HANGUP)

    def _post(self, event: ControllerEvent) -> None:
        if self._closed:
            return
        self._queue.put_nowait(Envelope(event))

    async def _submit(self, event: ControllerEvent) -> bool:
        if self._task is None or self._closed:
            raise RuntimeError("CallController is not running")
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(Envelope(event, future))
        return await future

    async def _run(self) -> None:
        while True:
            envelope = await self._queue.get()
            if envelope is None:
                return
            result = await self._dispatch(envelope.event)
            if envelope.future is not None and not envelope.future.done():
                envelope.future.set_result(result)

    async def _dispatch(self, event: ControllerEvent) -> bool:
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.warning("No handler for %r", event)
            return False
        try:
            return await handler(event)
        except PermissionDenied as exc:
            logger.warning("Media access refused: %s", exc)
            await self._abort(EndReason.PERMISSION_DENIED)
        except SendError:
            logger.exception("Signaling send failed while handling %s", type(event).__name__)
            await self._abort(EndReason.SEND_FAILED)
        except Exception:
            logger.exception("Call handler failed for %s", type(event).__name__)
            await self._abort(EndReason.FAILED)
        return False

    # -- public API ---------------------------------------------------------

    async def call(self, peer_id: str) -> bool:
        peer_id = peer_id.strip()
        if not peer_id:
            raise ValueError("peer_id must not be empty")
        if peer_id == self._local_id:
            raise ValueError("Cannot call yourself")
        return await self._submit(StartCall(peer_id))

    async def accept_call(self) -> bool:
        return await self._submit(AcceptCall())

    async def reject_call(self) -> bool:
        return await self._submit(RejectCall())

    async def end_call(self) -> bool:
        return await self._submit(EndCall())

    async def toggle_mute(self, muted: bool | None = None) -> bool:
        return await self._submit(ToggleMute(muted))

    async def toggle_video(self, enabled: bool | None = None) -> bool:
        return await self._submit(ToggleVideo(enabled))

    async def switch_camera(self) -> bool:
        return await self._submit(SwitchCamera())

    # -- local actions ------------------------------------------------------

    async def _handle_start_call(self, event: StartCall) -> bool:
        s = self._session
        if s.phase != CallPhase.IDLE:
            logger.warning(
                "Ignoring call to %s: already %s with %s", event.peer_id, s.phase, s.peer_id
            )
            return False
        if not await self._ensure_permissions():
            self._end_reason = EndReason.PERMISSION_DENIED
            self._publish()
            return False

        s.generation += 1
        s.peer_id = event.peer_id
        s.role = CallRole.CALLER

        await self._prepare_connection()
        offer = await self._engine.create_offer(s.connection)
        offer = await self._engine.set_local_description(s.connection, offer)
        await self._channel.send_offer(event.peer_id, offer)

        s.phase = CallPhase.CALLING
        s.deadline = self._arm_deadline(self._call_timeout)
        logger.info("Calling %s", event.peer_id)
        self._publish()
        return True

    async def _handle_accept(self, event: AcceptCall) -> bool:
        s = self._session
        if s.phase != CallPhase.RECEIVING_CALL or s.peer_id is None:
            logger.warning("Nothing to accept (phase %s)", s.phase)
            return False
        peer_id = s.peer_id
        _cancel(s.deadline)
        s.deadline = None
        if not await self._ensure_permissions():
            await self._notify_quietly(self._channel.send_call_rejected, peer_id)
            await self._clean_up_call(EndReason.PERMISSION_DENIED)
            return False

        await self._prepare_connection()
        assert s.remote_offer is not None
        await self._engine.set_remote_description(s.connection, s.remote_offer)
        s.remote_description_set = True
        await self._flush_candidates()

        await self._channel.send_call_accepted(peer_id)
        answer = await self._engine.create_answer(s.connection)
        answer = await self._engine.set_local_description(s.connection, answer)
        await self._channel.send_answer(peer_id, answer)

        s.phase = CallPhase.IN_CALL
        logger.info("In call with %s", peer_id)
        self._publish()
        return True

    async def _handle_reject(self, event: RejectCall) -> bool:
        s = self._session
        if s.phase != CallPhase.RECEIVING_CALL or s.peer_id is None:
            logger.warning("Nothing to reject (phase %s)", s.phase)
            return False
        await self._notify_quietly(self._channel.send_call_rejected, s.peer_id)
        return await self._clean_up_call(EndReason.DECLINED)

    async def _handle_end(self, event: EndCall) -> bool:
        s = self._session
        if s.phase == CallPhase.IDLE:
            return False
        if s.phase == CallPhase.RECEIVING_CALL:
            return await self._handle_reject(RejectCall())
        assert s.peer_id is not None
        await self._notify_quietly(self._channel.send_end_call, s.peer_id)
        return await self._clean_up_call(EndReason.HANGUP)

    async def _handle_toggle_mute(self, event: ToggleMute) -> bool:
        s = self._session
        track = s.local_media.audio_track if s.local_media else None
        if track is None:
            return False
        s.muted = (not s.muted) if event.muted is None else event.muted
        track.enabled = not s.muted
        logger.info("Microphone %s", "muted" if s.muted else "unmuted")
        self._publish()
        return True

    async def _handle_toggle_video(self, event: ToggleVideo) -> bool:
        s = self._session
        track = s.local_media.video_track if s.local_media else None
        if track is None:
            return False
        s.video_enabled = (not s.video_enabled) if event.enabled is None else event.enabled
        track.enabled = s.video_enabled
        logger.info("Camera %s", "on" if s.video_enabled else "off")
        self._publish()
        return True

    async def _handle_switch_camera(self, event: SwitchCamera) -> bool:
        s = self._session
        local = s.local_media
        if local is None or local.video_track is None:
            return False
        try:
            devices = await self._media.enumerate_video_devices()
            others = [d for d in devices if d.device_id != local.device_id]
            if len(devices) < 2 or not others:
                logger.info("No other camera to switch to")
                return False
            ids = [d.device_id for d in devices]
            if local.device_id in ids:
                target = devices[(ids.index(local.device_id) + 1) % len(devices)]
            else:
                target = others[0]
            fresh = await self._media.acquire_local_media(
                MediaConstraints(audio=False, video=True, device_id=target.device_id)
            )
        except (NegotiationError, PermissionDenied, OSError) as exc:
            logger.warning("Camera switch failed: %s", exc)
            return False

        new_track = fresh.video_track
        if new_track is None:
            return False
        new_track.enabled = s.video_enabled
        old_track = local.video_track
        if s.connection is not None:
            try:
                await self._engine.replace_local_track(s.connection, old_track, new_track)
            except NegotiationError as exc:
                logger.warning("Camera switch failed: %s", exc)
                await self._media.stop_track(new_track)
                return False
        await self._media.stop_track(old_track)
        local.video_track = new_track
        local.device_id = target.device_id
        logger.info("Switched camera to %s", target.device_id)
        return True

    # -- inbound signaling --------------------------------------------------

    async def _handle_inbound(self, event: InboundMessage) -> bool:
        message = event.message
        return await self._message_handlers[message.type](message)

    async def _on_offer(self, message: SignalingMessage) -> bool:
        s = self._session
        if s.phase == CallPhase.IDLE:
            s.generation += 1
            s.phase = CallPhase.RECEIVING_CALL
            s.peer_id = message.from_id
            s.role = CallRole.CALLEE
            s.remote_offer = message.description
            if self._incoming_call_timeout is not None:
                s.deadline = self._arm_deadline(self._incoming_call_timeout)
            logger.info("Incoming call from %s", message.from_id)
            self._publish()
            return True
        if s.matches(message.from_id) and s.phase != CallPhase.CALLING:
            logger.debug("Duplicate offer from %s ignored", message.from_id)
            return False
        await self._reject_busy(message.from_id)
        return False

    async def _on_answer(self, message: SignalingMessage) -> bool:
        s = self._session
        if s.phase != CallPhase.CALLING or not s.matches(message.from_id):
            logger.warning("Ignoring answer from %s in phase %s", message.from_id, s.phase)
            return False
        _cancel(s.deadline)
        s.deadline = None
        await self._engine.set_remote_description(s.connection, message.description)
        s.remote_description_set = True
        await self._flush_candidates()
        s.phase = CallPhase.IN_CALL
        logger.info("In call with %s", s.peer_id)
        self._publish()
        return True

    async def _on_candidate(self, message: SignalingMessage) -> bool:
        s = self._session
        if not s.matches(message.from_id):
            logger.debug("Dropping candidate from %s: no session", message.from_id)
            return False
        if s.connection is None or not s.remote_description_set:
            s.pending_candidates.append(message.candidate)
            logger.debug("Buffered candidate from %s", message.from_id)
            return True
        await self._add_candidate(message.candidate)
        return True

    async def _on_call_request(self, message: SignalingMessage) -> bool:
        s = self._session
        if s.phase == CallPhase.IDLE:
            logger.info("%s is about to call", message.from_id)
            return False
        if s.matches(message.from_id):
            return False
        await self._reject_busy(message.from_id)
        return False

    async def _on_call_accepted(self, message: SignalingMessage) -> bool:
        s = self._session
        if s.phase != CallPhase.CALLING or not s.matches(message.from_id):
            logger.warning("Ignoring call-accepted from %s", message.from_id)
            return False
        logger.info("%s accepted; waiting for answer", message.from_id)
        return True

    async def _on_call_rejected(self, message: SignalingMessage) -> bool:
        s = self._session
        if s.phase != CallPhase.CALLING or not s.matches(message.from_id):
            logger.warning("Ignoring call-rejected from %s in phase %s", message.from_id, s.phase)
            return False
        logger.info("%s rejected the call", message.from_id)
        return await self._clean_up_call(EndReason.REJECTED)

    async def _on_end_call(self, message: SignalingMessage) -> bool:
        s = self._session
        if not s.matches(message.from_id):
            logger.warning("Ignoring end-call from %s", message.from_id)
            return False
        logger.info("%s ended the call", message.from_id)
        return await self._clean_up_call(EndReason.REMOTE_HANGUP)

    # -- timers, transport and engine events --------------------------------

    def _arm_deadline(self, delay: float) -> asyncio.TimerHandle:
        generation = self._session.generation
        logger.debug("Deadline armed: %.1fs", delay)
        return asyncio.get_running_loop().call_later(
            delay, self._post, DeadlineElapsed(generation)
        )

    async def _handle_deadline(self, event: DeadlineElapsed) -> bool:
        s = self._session
        if event.generation != s.generation or s.deadline is None:
            logger.debug("Stale deadline ignored")
            return False
        s.deadline = None
        peer_id = s.peer_id
        assert peer_id is not None
        if s.phase == CallPhase.CALLING:
            logger.warning("Call to %s timed out", peer_id)
            await self._notify_quietly(self._channel.send_end_call, peer_id)
            return await self._clean_up_call(EndReason.TIMEOUT)
        if s.phase == CallPhase.RECEIVING_CALL:
            logger.warning("Missed call from %s", peer_id)
            await self._notify_quietly(self._channel.send_call_rejected, peer_id)
            return await self._clean_up_call(EndReason.MISSED)
        return False

    async def _handle_transport_state(self, event: TransportStateChanged) -> bool:
        if event.state == TransportState.FAILED:
            self._error = "Signaling transport failed permanently"
            self._publish()
        return True

    async def _handle_local_candidate(self, event: LocalCandidateGenerated) -> bool:
        s = self._session
        if event.handle is not s.connection or s.peer_id is None:
            return False
        await self._channel.send_candidate(s.peer_id, event.candidate)
        return True

    async def _handle_remote_track(self, event: RemoteTrackAdded) -> bool:
        s = self._session
        if event.handle is not s.connection or s.connection is None:
            return False
        s.remote_stream = event.stream
        self._publish()
        return True

    async def _handle_connectivity(self, event: ConnectivityStateChanged) -> bool:
        s = self._session
        if event.handle is not s.connection or s.connection is None:
            return False
        logger.info("Connectivity with %s: %s", s.peer_id, event.state)
        if s.phase == CallPhase.IN_CALL and event.state in (
            ConnectivityState.FAILED,
            ConnectivityState.DISCONNECTED,
        ):
            if event.state == ConnectivityState.FAILED:
                self._error = f"Connection to {s.peer_id} failed"
            return await self._clean_up_call(EndReason.CONNECTION_LOST)
        return True

    # -- helpers ------------------------------------------------------------

    async def _ensure_permissions(self) -> bool:
        try:
            if await self._permissions.has_required_permissions():
                return True
            return await self._permissions.request_required_permissions()
        except PermissionDenied as exc:
            logger.warning("Permission denied: %s", exc)
            return False

    async def _prepare_connection(self) -> None:
        """Acquire local media and open a connection carrying it."""
        s = self._session
        s.local_media = await self._media.acquire_local_media(self._constraints)
        s.connection = await self._engine.create_connection(self._ice_servers, self._post)
        for track in s.local_media.tracks:
            await self._engine.add_local_track(s.connection, track)

    async def _flush_candidates(self) -> None:
        s = self._session
        pending, s.pending_candidates = s.pending_candidates, []
        for candidate in pending:
            await self._add_candidate(candidate)

    async def _add_candidate(self, candidate: IceCandidate) -> None:
        try:
            await self._engine.add_remote_candidate(self._session.connection, candidate)
        except NegotiationError as exc:
            logger.warning("Remote candidate rejected: %s", exc)

    async def _reject_busy(self, peer_id: str) -> None:
        logger.warning("Busy: rejecting %s", peer_id)
        await self._notify_quietly(self._channel.send_call_rejected, peer_id)

    async def _notify_quietly(
        self, send: Callable[[str], Awaitable[None]], peer_id: str
    ) -> None:
        try:
            await send(peer_id)
        except TransportError as exc:
            logger.warning("Could not notify %s: %s", peer_id, exc)

    async def _abort(self, reason: EndReason) -> None:
        """Tell a committed peer the call is off, then release everything."""
        s = self._session
        if s.peer_id is not None and s.phase == CallPhase.RECEIVING_CALL:
            await self._notify_quietly(self._channel.send_call_rejected, s.peer_id)
        elif s.peer_id is not None and s.phase in (CallPhase.CALLING, CallPhase.IN_CALL):
            await self._notify_quietly(self._channel.send_end_call, s.peer_id)
        await self._clean_up_call(reason)

    async def _clean_up_call(self, reason: EndReason) -> bool:
        """Release the session's resources and publish idle. Safe to repeat."""
        s = self._session
        if s.is_clear():
            return False
        logger.info("Call with %s ended: %s", s.peer_id, reason)
        s.phase = CallPhase.ENDED
        _cancel(s.deadline)
        connection, local_media = s.connection, s.local_media
        s.reset()
        self._end_reason = reason

        if connection is not None:
            try:
                await self._engine.close(connection)
            except Exception:
                logger.exception("Closing connection failed")
        if local_media is not None:
            for track in local_media.tracks:
                try:
                    await self._media.stop_track(track)
                except Exception:
                    logger.exception("Stopping %r failed", track)
        self._publish()
        return True

    def _publish(self) -> None:
        s = self._session
        local = s.local_media
        snapshot = CallSnapshot(
            phase=s.phase,
            local_id=self._local_id,
            peer_id=s.peer_id,
            role=s.role,
            has_local_media=local is not None and bool(local.tracks),
            has_remote_media=s.remote_stream is not None,
            muted=s.muted,
            video_enabled=s.video_enabled,
            end_reason=self._end_reason,
            error=self._error,
        )
        # end_reason and error describe a single transition
        self._end_reason = None
        self._error = None
        self.notifier.publish(snapshot)
