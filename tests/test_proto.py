import orjson
import pytest

from chatrelay.core import proto
from chatrelay.core.errors import BadPayload


def test_build_frame_has_fields():
    f = proto.build_frame(proto.T_PRESENCE_UPDATE, "relay-1", "*", {"users": []})
    assert set(f.keys()) == {"type", "from", "to", "ts", "payload"}
    assert isinstance(f["ts"], int)


def test_encode_frame_is_canonical():
    a = proto.encode_frame({"type": "X", "payload": {"b": 1, "a": 2}})
    b = proto.encode_frame({"payload": {"a": 2, "b": 1}, "type": "X"})
    assert a == b
    assert a == '{"payload":{"a":2,"b":1},"type":"X"}'


def test_decode_frame_reads_from_alias():
    raw = orjson.dumps({"type": "MSG_SEND", "from": "a1", "to": "b1", "ts": 5, "payload": {"x": 1}})
    frame = proto.decode_frame(raw)
    assert frame.from_ == "a1"
    assert frame.payload == {"x": 1}
    assert orjson.loads(proto.encode_frame(frame))["from"] == "a1"


def test_decode_frame_defaults_optional_header():
    frame = proto.decode_frame('{"type": "HELLO"}')
    assert frame.from_ == "" and frame.to == "" and frame.payload == {}


@pytest.mark.parametrize(
    "raw",
    [
        "{not json",
        "[1, 2]",
        '{"payload": {}}',
        '{"type": "HELLO", "ts": -1}',
        '{"type": "HELLO", "payload": "nope"}',
    ],
)
def test_decode_frame_rejects_malformed(raw):
    with pytest.raises(BadPayload):
        proto.decode_frame(raw)


def test_hello_requires_non_empty_username():
    with pytest.raises(BadPayload):
        proto.parse_payload(proto.HelloPayload, {"username": "   "})
    with pytest.raises(BadPayload):
        proto.parse_payload(proto.HelloPayload, {})


def test_hello_connection_id_is_optional():
    hello = proto.parse_payload(proto.HelloPayload, {"username": "alice"})
    assert hello.connection_id is None
    hello = proto.parse_payload(proto.HelloPayload, {"username": "alice", "connectionID": ""})
    assert hello.connection_id is None
    hello = proto.parse_payload(proto.HelloPayload, {"username": "alice", "connectionID": "a1"})
    assert hello.connection_id == "a1"


def test_send_payload_requires_fields_and_keeps_extras():
    p = proto.parse_payload(proto.SendPayload, {"to": "b1", "message": "hi", "time": "T1", "client_ref": 7})
    assert p.to == "b1"
    with pytest.raises(BadPayload, match="time"):
        proto.parse_payload(proto.SendPayload, {"to": "b1", "message": "hi"})
    with pytest.raises(BadPayload):
        proto.parse_payload(proto.SendPayload, {"to": "", "message": "hi", "time": "T1"})


def test_fetch_payload_requires_receiver():
    with pytest.raises(BadPayload):
        proto.parse_payload(proto.FetchPayload, {})


def test_error_classes_use_wire_codes():
    from chatrelay.core.errors import BadPayload, InvalidHandshake, StoreUnavailable

    for cls in (BadPayload, InvalidHandshake, StoreUnavailable):
        assert cls.code in proto.ERROR_CODES
    assert BadPayload("x").detail == "x"
    assert StoreUnavailable().detail == "STORE_UNAVAILABLE"
