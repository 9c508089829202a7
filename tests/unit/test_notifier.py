import asyncio

import pytest

from pagecast.notifier import ChangeBroker, ChangeEvent, ProgressStream, format_sse


def test_format_sse_keeps_unicode():
    frame = format_sse("status", {"message": "नमस्ते"})
    assert frame == 'event: status\ndata: {"message": "नमस्ते"}\n\n'


def test_progress_stream_has_single_terminal_event():
    stream = ProgressStream()
    assert stream.status("Uploading PDF")
    assert stream.completed({"id": "b1", "total_pages": 3})
    assert stream.error("late failure") is False
    assert stream.status("late status") is False
    assert [e.type for e in stream.events] == ["status", "completed"]
    assert stream.events[-1].data["total_pages"] == 3


def test_progress_stream_rejects_unknown_events():
    with pytest.raises(ValueError):
        ProgressStream().emit("finished")


def test_progress_stream_sse_ends_after_terminal_event():
    async def scenario():
        stream = ProgressStream()
        stream.status("one")
        stream.error("boom")
        return [frame async for frame in stream.sse()]

    frames = asyncio.run(scenario())
    assert len(frames) == 2
    assert frames[-1] == 'event: error\ndata: {"error": "boom"}\n\n'


def test_subscription_coalesces_per_book():
    async def scenario():
        broker = ChangeBroker()
        sub = broker.subscribe(["a"])
        for n in (1, 2, 3):
            broker.publish(ChangeEvent("a", "update", n))
        broker.publish(ChangeEvent("b", "update", 1))
        await asyncio.sleep(0)
        first = await sub.get()
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(sub.get(), 0.05)
        sub.close()
        return first, broker.subscriber_count

    first, remaining = asyncio.run(scenario())
    assert first == ChangeEvent("a", "update", 3)
    assert remaining == 0


def test_wildcard_subscription_sees_every_book():
    async def scenario():
        broker = ChangeBroker()
        async with broker.subscribe() as sub:
            broker.publish(ChangeEvent("a", "insert", 1))
            broker.publish(ChangeEvent("b", "delete"))
            await asyncio.sleep(0)
            return [await sub.get(), await sub.get()]

    events = asyncio.run(scenario())
    assert {e.book_id for e in events} == {"a", "b"}


def test_closed_subscription_stops_iteration():
    async def scenario():
        broker = ChangeBroker()
        sub = broker.subscribe(["a"])
        received = []

        async def consume():
            async for event in sub:
                received.append(event)

        task = asyncio.create_task(consume())
        broker.publish(ChangeEvent("a", "update", 1))
        await asyncio.sleep(0.01)
        sub.close()
        await asyncio.wait_for(task, 1)
        broker.publish(ChangeEvent("a", "update", 2))
        return received

    received = asyncio.run(scenario())
    assert received == [ChangeEvent("a", "update", 1)]
