"""Exception hierarchy for signaling, transport and negotiation failures."""

from __future__ import annotations


class PeerCallError(Exception):
    """Base class for all peercall errors."""


class TransportError(PeerCallError):
    """Mailbox transport failure (connect or send)."""


class ConnectError(TransportError):
    """The transport could not (re)establish its connection."""


class AuthenticationError(ConnectError):
    """The transport was refused permanently; reconnecting will not help."""


class SendError(TransportError):
    """A message could not be handed to the transport."""


class MessageFormatError(PeerCallError, ValueError):
    """A wire message could not be decoded into a SignalingMessage."""


class UnknownMessageType(MessageFormatError):
    """A wire message carried a ``type`` outside the signaling vocabulary."""

    def __init__(self, type_name: str) -> None:
        super().__init__(f"Unknown signaling message type: {type_name!r}")
        self.type_name = type_name


class NegotiationError(PeerCallError):
    """The media engine failed while creating or installing a description."""


class PermissionDenied(PeerCallError):
    """Camera/microphone access was refused."""
