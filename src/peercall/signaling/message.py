"""Signaling message model and JSON wire codec.

Wire shape (one JSON object per message)::

    {"type": "offer", "data": {"sdp": "...", "type": "offer"}, "from": "A", "to": "B"}

``data`` is a session description for offer/answer, a network-path
candidate for candidate, and ``null`` for the call-control types.
"""

from __future__ import annotations

import dataclasses
import json
from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from peercall.errors import MessageFormatError, UnknownMessageType


class MessageType(StrEnum):
    OFFER = "offer"
    ANSWER = "answer"
    CANDIDATE = "candidate"
    CALL_REQUEST = "call-request"
    CALL_ACCEPTED = "call-accepted"
    CALL_REJECTED = "call-rejected"
    END_CALL = "end-call"


# Types whose payload is a session description, keyed to the polarity tag
# the description must carry.
_DESCRIPTION_TYPES = {
    MessageType.OFFER: "offer",
    MessageType.ANSWER: "answer",
}


@dataclasses.dataclass(frozen=True)
class SessionDescription:
    """Opaque negotiation document plus its polarity tag."""

    sdp: str
    type: str

    def to_wire(self) -> dict[str, str]:
        return {"sdp": self.sdp, "type": self.type}


@dataclasses.dataclass(frozen=True)
class IceCandidate:
    """One network-path candidate with its media-line correlation fields."""

    candidate: str
    sdp_mid: str | None = None
    sdp_mline_index: int | None = None

    def to_wire(self) -> dict[str, Any]:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }


Payload = SessionDescription | IceCandidate | None


@dataclasses.dataclass(frozen=True)
class SignalingMessage:
    """Immutable signaling message addressed from one endpoint to another."""

    type: MessageType
    from_id: str
    to_id: str
    payload: Payload = None

    def __post_init__(self) -> None:
        if not self.from_id:
            raise MessageFormatError("Signaling message requires a non-empty sender")
        expected = _DESCRIPTION_TYPES.get(self.type)
        if expected is not None:
            if not isinstance(self.payload, SessionDescription):
                raise MessageFormatError(f"{self.type} requires a session description")
            if self.payload.type != expected:
                raise MessageFormatError(
                    f"{self.type} carries a {self.payload.type!r} description"
                )
        elif self.type == MessageType.CANDIDATE:
            if not isinstance(self.payload, IceCandidate):
                raise MessageFormatError("candidate requires an ICE candidate payload")
        elif self.payload is not None:
            raise MessageFormatError(f"{self.type} carries no payload")

    @property
    def description(self) -> SessionDescription:
        assert isinstance(self.payload, SessionDescription)
        return self.payload

    @property
    def candidate(self) -> IceCandidate:
        assert isinstance(self.payload, IceCandidate)
        return self.payload

    def to_wire(self) -> dict[str, Any]:
        data = self.payload.to_wire() if self.payload is not None else None
        return {"type": str(self.type), "data": data, "from": self.from_id, "to": self.to_id}

    @classmethod
    def from_wire(cls, raw: Mapping[str, Any]) -> SignalingMessage:
        """Validate a decoded wire object. Unrecognised keys are ignored."""
        type_name = raw.get("type")
        if not isinstance(type_name, str):
            raise MessageFormatError("Signaling message is missing its type")
        try:
            msg_type = MessageType(type_name)
        except ValueError:
            raise UnknownMessageType(type_name) from None

        from_id = raw.get("from")
        if not isinstance(from_id, str) or not from_id:
            raise MessageFormatError(f"{type_name} message has no sender")
        to_id = raw.get("to") or ""
        if not isinstance(to_id, str):
            raise MessageFormatError(f"{type_name} message has a non-string recipient")

        return cls(
            type=msg_type,
            from_id=from_id,
            to_id=to_id,
            payload=_parse_payload(msg_type, raw.get("data")),
        )


def _parse_payload(msg_type: MessageType, data: Any) -> Payload:
    if msg_type in _DESCRIPTION_TYPES:
        if not isinstance(data, Mapping):
            raise MessageFormatError(f"{msg_type} payload must be an object")
        sdp = data.get("sdp")
        polarity = data.get("type")
        if not isinstance(sdp, str) or not isinstance(polarity, str):
            raise MessageFormatError(f"{msg_type} payload needs string sdp and type")
        return SessionDescription(sdp=sdp, type=polarity)

    if msg_type == MessageType.CANDIDATE:
        if not isinstance(data, Mapping):
            raise MessageFormatError("candidate payload must be an object")
        candidate = data.get("candidate")
        sdp_mid = data.get("sdpMid")
        index = data.get("sdpMLineIndex")
        if not isinstance(candidate, str):
            raise MessageFormatError("candidate payload needs a candidate string")
        if sdp_mid is not None and not isinstance(sdp_mid, str):
            raise MessageFormatError("candidate sdpMid must be a string")
        # bool is an int subclass; reject it explicitly
        if index is not None and (not isinstance(index, int) or isinstance(index, bool)):
            raise MessageFormatError("candidate sdpMLineIndex must be an integer")
        return IceCandidate(candidate=candidate, sdp_mid=sdp_mid, sdp_mline_index=index)

    # Call-control messages: some stores write {} instead of null
    return None


def encode_message(msg: SignalingMessage) -> str:
    return json.dumps(msg.to_wire())


def parse_frame(data: str | bytes) -> dict[str, Any]:
    """Parse one JSON wire frame into its raw object, without decoding it."""
    try:
        raw = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MessageFormatError(f"Invalid JSON signaling frame: {exc}") from exc
    if not isinstance(raw, dict):
        raise MessageFormatError("Signaling frame must be a JSON object")
    return raw
