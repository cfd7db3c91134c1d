import pytest

from pomelobot.codec import (
    Message,
    MessageType,
    Package,
    PackageType,
    PomeloCodec,
    decode_body,
    decode_message,
    decode_packages,
    encode_body,
    encode_message,
    encode_package,
)
from pomelobot.errors import CodecError


def test_package_header_is_type_and_24bit_length():
    frame = encode_package(PackageType.DATA, b"abc")
    assert frame == bytes([4, 0, 0, 3]) + b"abc"
    assert encode_package(PackageType.HEARTBEAT) == bytes([3, 0, 0, 0])


def test_decode_packages_splits_concatenated_frames():
    frame = encode_package(PackageType.HEARTBEAT) + encode_package(PackageType.KICK, b'{"r":1}')
    assert decode_packages(frame) == [
        Package(PackageType.HEARTBEAT, b""),
        Package(PackageType.KICK, b'{"r":1}'),
    ]


def test_decode_packages_rejects_truncated_body():
    with pytest.raises(CodecError):
        decode_packages(bytes([4, 0, 0, 9]) + b"abc")


def test_decode_packages_rejects_unknown_type():
    with pytest.raises(CodecError):
        decode_packages(bytes([9, 0, 0, 0]))


def test_request_id_is_varint_low_group_first():
    msg = encode_message(300, MessageType.REQUEST, False, "a.b.c", b"{}")
    # flag, 0xAC 0x02 (300), route length, route, body
    assert msg[0] == 0
    assert msg[1:3] == bytes([0xAC, 0x02])
    assert msg[3] == 5
    assert msg[4:9] == b"a.b.c"
    assert msg[9:] == b"{}"


def test_compressed_route_is_two_bytes_big_endian():
    msg = encode_message(1, MessageType.REQUEST, True, 0x0102, b"")
    assert msg == bytes([0x01, 0x01, 0x01, 0x02])


def test_decode_message_response_has_no_route():
    raw = encode_message(77, MessageType.RESPONSE, False, None, b'{"code":200}')
    assert decode_message(raw) == Message(77, MessageType.RESPONSE, False, None, b'{"code":200}')


def test_decode_message_push_with_named_route():
    raw = encode_message(0, MessageType.PUSH, False, "onChat", b'{"msg":"hi"}')
    msg = decode_message(raw)
    assert msg.type is MessageType.PUSH
    assert msg.id == 0
    assert msg.route == "onChat"
    assert decode_body(msg.body) == {"msg": "hi"}


def test_decode_message_truncated_id():
    with pytest.raises(CodecError):
        decode_message(bytes([0x04, 0x80]))


def test_encode_message_rejects_long_route_and_bad_code():
    with pytest.raises(CodecError):
        encode_message(1, MessageType.REQUEST, False, "x" * 256)
    with pytest.raises(CodecError):
        encode_message(1, MessageType.REQUEST, True, 0x10000)
    with pytest.raises(CodecError):
        encode_message(1, MessageType.REQUEST, True, "not.a.code")


def test_bodies_are_compact_json():
    assert encode_body({"a": 1, "b": [1, 2]}) == b'{"a":1,"b":[1,2]}'
    assert decode_body(b"") is None
    with pytest.raises(CodecError):
        decode_body(b"{nope")


def test_codec_object_delegates():
    codec = PomeloCodec()
    body = codec.encode_body("r", {"uid": 1})
    assert codec.decode_body("r", body) == {"uid": 1}
    frame = codec.encode_package(PackageType.DATA, codec.encode_message(3, MessageType.NOTIFY, False, "n.h", body))
    (package,) = codec.decode_packages(frame)
    msg = codec.decode_message(package.body)
    assert msg.type is MessageType.NOTIFY
    assert msg.route == "n.h"
