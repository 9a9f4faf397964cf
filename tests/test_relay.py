"""Stream relay unit tests.

Test coverage:
- Line order and stream tag are preserved
- Line terminators are stripped (LF and CRLF), invalid UTF-8 is replaced
- EOF without trailing newline still yields the last line
- Cancellation stops a relay blocked on read or on a full channel
- Closed receiver ends the relay
- Join group is decremented exactly once in every exit path
- Oversized lines are dropped without ending the relay
"""

from __future__ import annotations

import asyncio

import anyio
import pytest

from juggle_supervisor.runtime.output import OutputRecord, open_output_channel
from juggle_supervisor.runtime.relay import relay_stream
from juggle_supervisor.runtime.sync import CancelToken, JoinGroup


# =============================================================================
# Helpers
# =============================================================================


def make_reader(data: bytes = b"", *, eof: bool = True, limit: int = 2**16) -> asyncio.StreamReader:
    reader = asyncio.StreamReader(limit=limit)
    if data:
        reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


async def drain(receiver) -> list[OutputRecord]:
    records = []
    async with receiver:
        async for record in receiver:
            records.append(record)
    return records


async def start_relay(reader, sender, *, is_error=False):
    token = CancelToken()
    group = JoinGroup()
    group.add()
    task = asyncio.create_task(relay_stream(reader, sender, token, group, is_error=is_error))
    return token, group, task


# =============================================================================
# Line Handling
# =============================================================================


class TestLineHandling:
    """Test how lines are framed and tagged."""

    @pytest.mark.asyncio
    async def test_lines_in_order(self):
        sender, receiver = open_output_channel(10)
        reader = make_reader(b"one\ntwo\nthree\n")
        _, group, task = await start_relay(reader, sender)

        records = await drain(receiver)
        await task

        assert [r.line for r in records] == ["one", "two", "three"]
        assert not any(r.is_error for r in records)
        assert group.count == 0

    @pytest.mark.asyncio
    async def test_stderr_tag(self):
        sender, receiver = open_output_channel(10)
        reader = make_reader(b"oops\n")
        await start_relay(reader, sender, is_error=True)

        records = await drain(receiver)

        assert records == [OutputRecord(line="oops", is_error=True, timestamp=records[0].timestamp)]

    @pytest.mark.asyncio
    async def test_crlf_and_missing_final_newline(self):
        sender, receiver = open_output_channel(10)
        reader = make_reader(b"windows\r\nlast")
        await start_relay(reader, sender)

        records = await drain(receiver)

        assert [r.line for r in records] == ["windows", "last"]

    @pytest.mark.asyncio
    async def test_empty_lines_are_kept(self):
        sender, receiver = open_output_channel(10)
        reader = make_reader(b"a\n\nb\n")
        await start_relay(reader, sender)

        records = await drain(receiver)

        assert [r.line for r in records] == ["a", "", "b"]

    @pytest.mark.asyncio
    async def test_invalid_utf8_is_replaced(self):
        sender, receiver = open_output_channel(10)
        reader = make_reader(b"bad \xff byte\n")
        await start_relay(reader, sender)

        records = await drain(receiver)

        assert records[0].line == "bad � byte"

    @pytest.mark.asyncio
    async def test_empty_stream_closes_channel(self):
        sender, receiver = open_output_channel(10)
        reader = make_reader()
        _, group, task = await start_relay(reader, sender)

        assert await drain(receiver) == []
        await task
        assert group.count == 0

    @pytest.mark.asyncio
    async def test_oversized_line_is_dropped(self):
        sender, receiver = open_output_channel(10)
        reader = make_reader(b"x" * 200 + b"\nafter\n", limit=64)
        await start_relay(reader, sender)

        records = await drain(receiver)

        assert [r.line for r in records] == ["after"]

    @pytest.mark.asyncio
    async def test_oversized_line_in_chunks_leaves_no_fragment(self):
        sender, receiver = open_output_channel(10)
        reader = make_reader(b"before\n" + b"x" * 100, eof=False, limit=64)
        _, group, task = await start_relay(reader, sender)

        first = await asyncio.wait_for(receiver.receive(), timeout=1.0)
        # the rest of the long line arrives over several pipe reads
        for _ in range(3):
            await asyncio.sleep(0.01)
            reader.feed_data(b"y" * 100)
        reader.feed_data(b"y" * 10 + b"\nafter\n")
        reader.feed_eof()

        records = await drain(receiver)
        await task

        assert first.line == "before"
        assert [r.line for r in records] == ["after"]
        assert group.count == 0

    @pytest.mark.asyncio
    async def test_oversized_unterminated_tail_is_dropped(self):
        sender, receiver = open_output_channel(10)
        reader = make_reader(b"ok\n" + b"z" * 200, limit=64)
        await start_relay(reader, sender)

        records = await drain(receiver)

        assert [r.line for r in records] == ["ok"]

    @pytest.mark.asyncio
    async def test_line_at_limit_is_kept(self):
        sender, receiver = open_output_channel(10)
        reader = make_reader(b"a" * 64 + b"\n", limit=64)
        await start_relay(reader, sender)

        records = await drain(receiver)

        assert [r.line for r in records] == ["a" * 64]


# =============================================================================
# Cancellation
# =============================================================================


class TestCancellation:
    """Test that every suspension point observes the token."""

    @pytest.mark.asyncio
    async def test_cancel_while_blocked_on_read(self):
        sender, receiver = open_output_channel(10)
        reader = make_reader(b"first\n", eof=False)
        token, group, task = await start_relay(reader, sender)

        record = await asyncio.wait_for(receiver.receive(), timeout=1.0)
        assert record.line == "first"

        token.cancel()
        await asyncio.wait_for(task, timeout=1.0)

        assert group.count == 0
        with pytest.raises(anyio.EndOfStream):
            receiver.receive_nowait()

    @pytest.mark.asyncio
    async def test_cancel_while_blocked_on_full_channel(self):
        sender, receiver = open_output_channel(1)
        reader = make_reader(b"a\nb\nc\n")
        token, group, task = await start_relay(reader, sender)

        # "a" fills the buffer, "b" blocks the relay on send
        await asyncio.sleep(0.05)
        assert not task.done()

        token.cancel()
        await asyncio.wait_for(task, timeout=1.0)

        assert group.count == 0
        assert receiver.receive_nowait().line == "a"
        with pytest.raises(anyio.EndOfStream):
            receiver.receive_nowait()

    @pytest.mark.asyncio
    async def test_closed_receiver_ends_relay(self):
        sender, receiver = open_output_channel(1)
        reader = make_reader(b"a\nb\nc\n")
        _, group, task = await start_relay(reader, sender)

        receiver.close()
        await asyncio.wait_for(task, timeout=1.0)

        assert group.count == 0

    @pytest.mark.asyncio
    async def test_two_relays_share_one_channel(self):
        sender, receiver = open_output_channel(10)
        token = CancelToken()
        group = JoinGroup()
        group.add(2)
        out = asyncio.create_task(
            relay_stream(make_reader(b"o1\no2\n"), sender.clone(), token, group, is_error=False)
        )
        err = asyncio.create_task(
            relay_stream(make_reader(b"e1\n"), sender, token, group, is_error=True)
        )

        records = await drain(receiver)
        await asyncio.gather(out, err)

        assert [r.line for r in records if not r.is_error] == ["o1", "o2"]
        assert [r.line for r in records if r.is_error] == ["e1"]
        assert group.count == 0
