"""Unit tests for the signaling wire protocol."""
import json

import pytest

from meshcall.errors import ProtocolViolation
from meshcall.signaling import protocol


def test_decode_join():
    message = protocol.decode('{"type": "join", "roomId": "abcd1"}')

    assert message.type == protocol.JOIN
    assert message.get("roomId") == "abcd1"


def test_decode_relayed_offer(sdp_offer):
    raw = json.dumps({"type": "offer", "to": "A1", "sdp": sdp_offer})
    message = protocol.decode(raw)

    assert message.get("to") == "A1"
    assert message.get("sdp") == sdp_offer


@pytest.mark.parametrize("raw", [
    "not json",
    "[1, 2, 3]",
    '{"roomId": "x"}',
    '{"type": "dance"}',
    '{"type": "join"}',
    '{"type": "offer", "to": "A1"}',
    '{"type": "offer", "to": "", "sdp": {"type": "offer", "sdp": "v=0"}}',
    '{"type": "answer", "to": "A1", "sdp": "v=0"}',
    '{"type": "ice-candidate", "to": "A1", "candidate": "x"}',
])
def test_decode_rejects_malformed(raw):
    with pytest.raises(ProtocolViolation):
        protocol.decode(raw)


def test_server_vocabulary_is_separate():
    """Clients may not send server-only messages and vice versa."""
    with pytest.raises(ProtocolViolation):
        protocol.decode('{"type": "peer-joined", "peerId": "A1"}')
    with pytest.raises(ProtocolViolation):
        protocol.decode('{"type": "join", "roomId": "abcd1"}', from_server=True)


def test_decode_room_joined():
    raw = json.dumps({"type": "room-joined", "peerId": "C3", "roomId": "ABCD1", "existingPeers": ["A1", "B2"]})
    message = protocol.decode(raw, from_server=True)

    assert message.get("existingPeers") == ["A1", "B2"]


def test_decode_room_joined_requires_id_list():
    raw = json.dumps({"type": "room-joined", "peerId": "C3", "roomId": "ABCD1", "existingPeers": "A1"})
    with pytest.raises(ProtocolViolation):
        protocol.decode(raw, from_server=True)


def test_null_candidate_is_valid():
    message = protocol.decode('{"type": "ice-candidate", "from": "A1", "candidate": null}', from_server=True)
    assert message.get("candidate") is None


def test_relayed_stamps_sender(sdp_offer):
    message = protocol.decode(json.dumps({"type": "offer", "to": "B2", "sdp": sdp_offer, "from": "EVIL"}))
    forwarded = protocol.relayed(message, "A1")

    data = json.loads(forwarded.encode())
    assert data["type"] == "offer"
    assert data["from"] == "A1"
    assert data["to"] == "B2"


def test_normalize_room_id():
    assert protocol.normalize_room_id(" abCd1 ") == "ABCD1"
    with pytest.raises(ProtocolViolation):
        protocol.normalize_room_id("   ")
    with pytest.raises(ProtocolViolation):
        protocol.normalize_room_id(42)
