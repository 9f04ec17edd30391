"""Tests for client-side message handling."""

from termbridge.client import ClientState, build_uri
from termbridge.modes import Mode
from termbridge.protocol import decode_control, app_exited_msg, error_msg, sync_msg


def test_build_uri():
    assert build_uri("localhost", 3000) == "ws://localhost:3000/terminal"
    assert build_uri("example.org", 443, "term", use_tls=True) == "wss://example.org:443/term"


def test_sync_updates_caught():
    state = ClientState(caught=[1])
    state.handle_control(decode_control(sync_msg([1, 25])))
    state.handle_control(decode_control(sync_msg([1, 25, 6])))
    assert state.caught == [1, 25, 6]


def test_app_exited_switches_to_restricted():
    state = ClientState(mode=Mode.PRIMARY)
    assert state.next_mode() is None
    state.handle_control(decode_control(app_exited_msg()))
    assert state.app_exited
    assert state.next_mode() is Mode.RESTRICTED


def test_restricted_session_does_not_reconnect():
    state = ClientState(mode=Mode.RESTRICTED, app_exited=True)
    assert state.next_mode() is None


def test_error_recorded():
    state = ClientState()
    state.handle_control(decode_control(error_msg("Could not start 'node'")))
    assert state.errors == ["Could not start 'node'"]


def test_unknown_control_ignored():
    state = ClientState(caught=[7])
    state.handle_control({"type": "pong"})
    assert state.caught == [7]
    assert not state.app_exited
