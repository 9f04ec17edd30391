"""Tests for the PTY process handle."""

import asyncio
import signal

import pytest

from termbridge.process import (
    WRITE_HIGH_WATER,
    ProcessExit,
    ProcessOutput,
    PtyProcess,
    SpawnError,
)


async def collect(proc: PtyProcess, timeout: float = 5.0) -> list:
    events = []

    async def _run():
        async for event in proc.events():
            events.append(event)

    await asyncio.wait_for(_run(), timeout)
    return events


def output_of(events) -> bytes:
    return b"".join(e.data for e in events if isinstance(e, ProcessOutput))


async def read_until(proc: PtyProcess, done, timeout: float = 5.0) -> bytes:
    """Read output until done(output) is true."""
    output = b""

    async def _run():
        nonlocal output
        async for event in proc.events():
            if isinstance(event, ProcessOutput):
                output += event.data
                if done(output):
                    return

    await asyncio.wait_for(_run(), timeout)
    return output


@pytest.mark.asyncio
async def test_spawn_and_read():
    proc = await PtyProcess.spawn("echo", ["hello-test"])
    events = await collect(proc)

    assert b"hello-test" in output_of(events)
    assert isinstance(events[-1], ProcessExit)
    assert events[-1].status == 0
    assert sum(isinstance(e, ProcessExit) for e in events) == 1
    assert not proc.alive


@pytest.mark.asyncio
async def test_spawn_missing_program():
    with pytest.raises(SpawnError):
        await PtyProcess.spawn("definitely-not-a-real-program-xyz")


@pytest.mark.asyncio
async def test_spawn_rejects_bad_size():
    with pytest.raises(ValueError):
        await PtyProcess.spawn("true", cols=0, rows=40)


@pytest.mark.asyncio
async def test_initial_size_and_env():
    proc = await PtyProcess.spawn(
        "sh",
        ["-c", 'stty size; echo "state=$CAUGHT_INIT term=$TERM"'],
        cols=120,
        rows=40,
        env={"CAUGHT_INIT": "[1,25]"},
    )
    output = output_of(await collect(proc))
    assert b"40 120" in output
    assert b"state=[1,25] term=xterm-256color" in output


@pytest.mark.asyncio
async def test_resize():
    proc = await PtyProcess.spawn("sh", ["-c", "sleep 0.5; stty size"])
    proc.resize(80, 24)
    assert proc.size == (80, 24)

    output = output_of(await collect(proc))
    assert b"24 80" in output


@pytest.mark.asyncio
@pytest.mark.parametrize("cols, rows", [(0, 24), (80, -1), ("80", 24), (True, 24), (80, None)])
async def test_resize_rejects_invalid(cols, rows):
    proc = await PtyProcess.spawn("sleep", ["5"])
    try:
        with pytest.raises(ValueError):
            proc.resize(cols, rows)
        assert proc.size == (120, 40)
    finally:
        proc.kill()
        await proc.wait()


@pytest.mark.asyncio
async def test_write():
    proc = await PtyProcess.spawn("cat")
    proc.write(b"ping\n")

    # echoed once by the line discipline, once by cat
    output = await read_until(proc, lambda out: out.count(b"ping") >= 2)
    assert b"ping" in output

    proc.kill()
    events = await collect(proc)
    assert isinstance(events[-1], ProcessExit)


@pytest.mark.asyncio
async def test_write_after_exit_is_ignored():
    proc = await PtyProcess.spawn("true")
    await collect(proc)
    proc.write(b"too late\n")


@pytest.mark.asyncio
async def test_drain_waits_for_a_child_that_is_not_reading():
    proc = await PtyProcess.spawn("sleep", ["10"], kill_grace=0.5)
    proc.write(b"x" * (4 * 1024 * 1024))

    assert proc.write_blocked
    assert proc.write_buffer_size > WRITE_HIGH_WATER
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(proc.drain(), timeout=0.3)

    proc.kill()
    await asyncio.wait_for(proc.drain(), timeout=5)
    assert proc.write_buffer_size == 0
    assert not proc.write_blocked
    await asyncio.wait_for(proc.wait(), timeout=5)


@pytest.mark.asyncio
async def test_drain_returns_at_once_for_small_writes():
    proc = await PtyProcess.spawn("cat")
    proc.write(b"ping\n")
    assert not proc.write_blocked
    await asyncio.wait_for(proc.drain(), timeout=1)

    proc.kill()
    await collect(proc)


@pytest.mark.asyncio
async def test_kill_twice_same_as_once():
    proc = await PtyProcess.spawn("sleep", ["10"])
    assert proc.alive
    proc.kill()
    proc.kill()
    assert proc.kill_requested

    events = await collect(proc)
    exits = [e for e in events if isinstance(e, ProcessExit)]
    assert len(exits) == 1
    assert exits[0].status == -signal.SIGHUP
    assert proc.returncode == exits[0].status

    proc.kill()
    assert await proc.wait() == exits[0].status


@pytest.mark.asyncio
async def test_kill_escalates_when_hangup_ignored():
    proc = await PtyProcess.spawn(
        "sh", ["-c", "trap '' HUP; echo ready; sleep 10"], kill_grace=0.3
    )
    await read_until(proc, lambda out: b"ready" in out)

    proc.kill()
    events = await collect(proc)
    assert events[-1] == ProcessExit(-signal.SIGKILL)


@pytest.mark.asyncio
async def test_output_before_exit():
    proc = await PtyProcess.spawn("sh", ["-c", "i=0; while [ $i -lt 200 ]; do echo line-$i; i=$((i+1)); done"])
    events = await collect(proc)
    output = output_of(events)
    assert b"line-0" in output
    assert b"line-199" in output
    assert isinstance(events[-1], ProcessExit)
