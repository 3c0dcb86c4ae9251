"""Signaling wire protocol.

Every frame is a JSON object with a ``type`` field. Clients send ``join``
once, then ``to``-addressed negotiation messages; the relay answers with
``room-joined`` and pushes ``peer-joined``/``peer-left`` notifications and
relayed negotiation messages carrying ``from``.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from meshcall.errors import ProtocolViolation

JOIN = "join"
ROOM_JOINED = "room-joined"
PEER_JOINED = "peer-joined"
PEER_LEFT = "peer-left"
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"

RELAYED_TYPES = (OFFER, ANSWER, ICE_CANDIDATE)

# Required fields per message type, keyed by direction.
CLIENT_FIELDS: Dict[str, tuple] = {
    JOIN: ("roomId",),
    OFFER: ("to", "sdp"),
    ANSWER: ("to", "sdp"),
    ICE_CANDIDATE: ("to", "candidate"),
}

SERVER_FIELDS: Dict[str, tuple] = {
    ROOM_JOINED: ("peerId", "roomId", "existingPeers"),
    PEER_JOINED: ("peerId",),
    PEER_LEFT: ("peerId",),
    OFFER: ("from", "sdp"),
    ANSWER: ("from", "sdp"),
    ICE_CANDIDATE: ("from", "candidate"),
}


@dataclass
class SignalingMessage:
    """Signaling message."""
    type: str
    data: dict = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def to_dict(self) -> dict:
        return {"type": self.type, **self.data}

    def encode(self) -> str:
        return json.dumps(self.to_dict())


def normalize_room_id(room_id: Any) -> str:
    """Room identifiers are case-insensitive; the canonical form is upper case."""
    if not isinstance(room_id, str) or not room_id.strip():
        raise ProtocolViolation(f"Invalid room id: {room_id!r}")
    return room_id.strip().upper()


def _check_sdp(sdp: Any) -> None:
    if not isinstance(sdp, dict):
        raise ProtocolViolation("Session description must be an object")
    if not isinstance(sdp.get("sdp"), str) or sdp.get("type") not in ("offer", "answer"):
        raise ProtocolViolation("Session description needs 'type' and 'sdp'")


def _check_fields(msg_type: str, data: dict, required: tuple) -> None:
    for name in required:
        if name not in data:
            raise ProtocolViolation(f"'{msg_type}' is missing '{name}'")

    for name in ("to", "from", "peerId"):
        if name in required and (not isinstance(data[name], str) or not data[name]):
            raise ProtocolViolation(f"'{msg_type}' has an invalid '{name}'")

    if msg_type in (OFFER, ANSWER):
        _check_sdp(data["sdp"])
    elif msg_type == ICE_CANDIDATE:
        candidate = data["candidate"]
        if candidate is not None and not isinstance(candidate, dict):
            raise ProtocolViolation("Candidate must be an object or null")
    elif msg_type == ROOM_JOINED:
        peers = data["existingPeers"]
        if not isinstance(peers, list) or not all(isinstance(p, str) for p in peers):
            raise ProtocolViolation("'existingPeers' must be a list of ids")


def decode(raw: Union[str, bytes], from_server: bool = False) -> SignalingMessage:
    """Parse and validate one frame.

    Args:
        raw: Frame text
        from_server: Validate against the server-to-client vocabulary

    Returns:
        Parsed message

    Raises:
        ProtocolViolation: Frame is not JSON, has an unknown type or lacks
            required fields
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolViolation(f"Unparseable frame: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolViolation("Frame is not a JSON object")

    msg_type = data.pop("type", None)
    vocabulary = SERVER_FIELDS if from_server else CLIENT_FIELDS
    if msg_type not in vocabulary:
        raise ProtocolViolation(f"Unknown message type: {msg_type!r}")

    _check_fields(msg_type, data, vocabulary[msg_type])
    return SignalingMessage(type=msg_type, data=data)


def join(room_id: str) -> SignalingMessage:
    return SignalingMessage(JOIN, {"roomId": room_id})


def room_joined(peer_id: str, room_id: str, existing_peers: List[str]) -> SignalingMessage:
    return SignalingMessage(
        ROOM_JOINED,
        {"peerId": peer_id, "roomId": room_id, "existingPeers": list(existing_peers)},
    )


def peer_joined(peer_id: str) -> SignalingMessage:
    return SignalingMessage(PEER_JOINED, {"peerId": peer_id})


def peer_left(peer_id: str) -> SignalingMessage:
    return SignalingMessage(PEER_LEFT, {"peerId": peer_id})


def offer(to: str, sdp: dict) -> SignalingMessage:
    return SignalingMessage(OFFER, {"to": to, "sdp": sdp})


def answer(to: str, sdp: dict) -> SignalingMessage:
    return SignalingMessage(ANSWER, {"to": to, "sdp": sdp})


def ice_candidate(to: str, candidate: Optional[dict]) -> SignalingMessage:
    return SignalingMessage(ICE_CANDIDATE, {"to": to, "candidate": candidate})


def relayed(message: SignalingMessage, sender: str) -> SignalingMessage:
    """Copy of a ``to``-addressed message stamped with its sender."""
    return SignalingMessage(message.type, {**message.data, "from": sender})
