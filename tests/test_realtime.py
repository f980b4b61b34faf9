import pytest

from conftest import settle
from feedsync.models.feed import ChangeKind, ChannelStatus, PushEvent
from feedsync.services.realtime import RealtimeReconciler


class Recorder:
    def __init__(self):
        self.events = []
        self.polls = 0

    async def on_entity_change(self, event):
        self.events.append(event)

    async def on_poll(self):
        self.polls += 1


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def reconciler(push, clock):
    return RealtimeReconciler("posts", push, clock=clock, connect_timeout=3, poll_interval=15)


@pytest.mark.asyncio
async def test_falls_back_to_polling_when_channel_never_connects(reconciler, recorder, clock):
    sub = reconciler.subscribe(recorder.on_entity_change, recorder.on_poll)

    await clock.advance(3)
    assert sub.polling is True
    assert recorder.polls == 0

    await clock.advance(14)
    assert recorder.polls == 0

    await clock.advance(1)
    assert recorder.polls == 1

    await clock.advance(15)
    assert recorder.polls == 2

    await clock.advance(45)
    assert recorder.polls == 5

    await sub.unsubscribe()


@pytest.mark.asyncio
async def test_connected_channel_never_polls(reconciler, recorder, push, clock):
    sub = reconciler.subscribe(recorder.on_entity_change, recorder.on_poll)
    await settle()
    push.connect("posts")

    await clock.advance(60)

    assert sub.connected is True
    assert sub.polling is False
    assert recorder.polls == 0
    await sub.unsubscribe()


@pytest.mark.asyncio
async def test_events_trigger_targeted_handler(reconciler, recorder, push, clock):
    sub = reconciler.subscribe(recorder.on_entity_change, recorder.on_poll)
    push.connect("posts")

    push.emit("posts", "42")
    push.emit("posts", "7", ChangeKind.DELETED)
    await settle()

    assert recorder.events == [
        PushEvent("42", ChangeKind.UPDATED),
        PushEvent("7", ChangeKind.DELETED),
    ]
    await sub.unsubscribe()


@pytest.mark.asyncio
async def test_event_before_status_counts_as_connected(reconciler, recorder, push, clock):
    sub = reconciler.subscribe(recorder.on_entity_change, recorder.on_poll)

    push.emit("posts", "1")
    await clock.advance(30)

    assert sub.connected is True
    assert recorder.polls == 0
    await sub.unsubscribe()


@pytest.mark.asyncio
async def test_late_connect_after_fallback_keeps_polling(reconciler, recorder, push, clock):
    sub = reconciler.subscribe(recorder.on_entity_change, recorder.on_poll)
    await clock.advance(3)

    push.connect("posts")
    await clock.advance(15)

    assert sub.polling is True
    assert recorder.polls == 1
    await sub.unsubscribe()


@pytest.mark.asyncio
async def test_channel_error_after_connect_starts_polling(reconciler, recorder, push, clock):
    sub = reconciler.subscribe(recorder.on_entity_change, recorder.on_poll)
    push.connect("posts")
    await settle()

    push.channels["posts"][1](ChannelStatus.ERROR)
    await clock.advance(15)

    assert sub.polling is True
    assert recorder.polls == 1
    await sub.unsubscribe()


@pytest.mark.asyncio
async def test_poll_failure_does_not_stop_polling(push, clock):
    reconciler = RealtimeReconciler("posts", push, clock=clock, connect_timeout=3, poll_interval=15)
    polls = []

    async def flaky_poll():
        polls.append(1)
        raise RuntimeError("offline")

    async def ignore(event):
        return None

    sub = reconciler.subscribe(ignore, flaky_poll)
    await clock.advance(3 + 15 + 15)

    assert len(polls) == 2
    await sub.unsubscribe()


@pytest.mark.asyncio
async def test_unsubscribe_leaves_no_timers(reconciler, recorder, push, clock):
    sub = reconciler.subscribe(recorder.on_entity_change, recorder.on_poll)
    await clock.advance(3)
    assert clock.pending == 1

    await sub.unsubscribe()

    assert clock.pending == 0
    assert push.unsubscribed == ["posts"]
    await clock.advance(60)
    assert recorder.polls == 0


@pytest.mark.asyncio
async def test_unsubscribe_before_timeout_cancels_connect_timer(reconciler, recorder, push, clock):
    sub = reconciler.subscribe(recorder.on_entity_change, recorder.on_poll)
    await settle()
    assert clock.pending == 1

    await sub.unsubscribe()
    await sub.unsubscribe()

    assert clock.pending == 0
    assert push.unsubscribed == ["posts"]
    assert sub.polling is False
