"""Tests for the wire protocol."""

import json

import pytest

from termbridge.modes import Mode
from termbridge.protocol import (
    Handshake,
    MsgType,
    ResizeFrame,
    app_exited_msg,
    as_bytes,
    decode_control,
    error_msg,
    init_msg,
    parse_control,
    parse_handshake,
    resize_msg,
    sync_msg,
)


def test_init_msg():
    d = decode_control(init_msg(Mode.RESTRICTED, [1, 25]))
    assert d == {"type": "init", "mode": "restricted", "caught": [1, 25]}


def test_init_msg_defaults_caught():
    d = decode_control(init_msg("primary"))
    assert d["caught"] == []


def test_sync_msg():
    d = decode_control(sync_msg([1, 25, 6]))
    assert d == {"type": "sync", "caught": [1, 25, 6]}


def test_app_exited_msg():
    assert json.loads(app_exited_msg()) == {"type": "app-exited"}


def test_error_msg():
    d = decode_control(error_msg("something broke"))
    assert d["type"] == MsgType.ERROR.value
    assert d["message"] == "something broke"


def test_decode_missing_type():
    with pytest.raises(ValueError):
        decode_control('{"foo": "bar"}')


@pytest.mark.parametrize("raw", ["[1, 2]", "5", '"init"', "null"])
def test_decode_non_object(raw):
    with pytest.raises(ValueError):
        decode_control(raw)


def test_parse_handshake_restricted():
    hs = parse_handshake('{"type": "init", "mode": "restricted"}')
    assert hs == Handshake(mode=Mode.RESTRICTED, initial_state=[])


def test_parse_handshake_primary_with_state():
    hs = parse_handshake(b'{"type": "init", "mode": "primary", "caught": [1, 25]}')
    assert hs.mode is Mode.PRIMARY
    assert hs.initial_state == [1, 25]


def test_parse_handshake_unknown_mode_falls_back():
    hs = parse_handshake('{"type": "init", "mode": "root-shell", "caught": {"a": 1}}')
    assert hs.mode is Mode.PRIMARY
    assert hs.initial_state == {"a": 1}


def test_parse_handshake_null_caught():
    hs = parse_handshake('{"type": "init", "caught": null}')
    assert hs.mode is Mode.PRIMARY
    assert hs.initial_state == []


@pytest.mark.parametrize("raw", [
    "ls\r",
    "",
    "{broken",
    '{"type": "resize", "cols": 80, "rows": 24}',
    '{"mode": "restricted"}',
    b"\xff\xfe",
])
def test_parse_handshake_rejects_non_init(raw):
    assert parse_handshake(raw) is None


def test_handshake_default():
    hs = Handshake.default()
    assert hs.mode is Mode.PRIMARY
    assert hs.initial_state == []


def test_parse_control_resize():
    assert parse_control(resize_msg(80, 24)) == ResizeFrame(cols=80, rows=24)


def test_parse_control_resize_binary_frame():
    assert parse_control(b'{"type":"resize","cols":100,"rows":30}') == ResizeFrame(100, 30)


def test_parse_control_resize_keeps_bad_dimensions():
    frame = parse_control('{"type": "resize", "cols": -1}')
    assert frame == ResizeFrame(cols=-1, rows=None)


@pytest.mark.parametrize("raw", [
    "q",
    "\x1b[A",
    '{"type": "ping"}',
    '{"type": "init", "mode": "restricted"}',
    '{"cols": 80, "rows": 24}',
    "[1, 2, 3]",
    b"\x03",
])
def test_parse_control_literal_input(raw):
    assert parse_control(raw) is None


def test_as_bytes():
    assert as_bytes("é") == "é".encode("utf-8")
    assert as_bytes(b"\x03") == b"\x03"


NESTED = "[" * 100000 + "]" * 100000


def test_decode_deeply_nested_raises_value_error():
    with pytest.raises(ValueError):
        decode_control(NESTED)


def test_parse_control_deeply_nested_is_literal():
    assert parse_control("[" * 100000) is None
    assert parse_control(NESTED.encode("ascii")) is None


def test_parse_handshake_deeply_nested_falls_back():
    raw = '{"type": "init", "mode": "restricted", "caught": ' + NESTED + "}"
    assert parse_handshake(raw) is None
