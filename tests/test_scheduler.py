"""Tests for the background scheduler pass."""

import asyncio
from datetime import timedelta

import pytest
from unittest.mock import AsyncMock, patch

from conftest import NOW, FakePostRepository, RecordingChannel, assert_invariants, make_machine, make_post
from journal_publisher.database.models import TgStatus
from journal_publisher.services.channel import SendResult
from journal_publisher.services.scheduler import Scheduler


def _pending(post_id: int, minutes_ago: int = 60, **overrides):
    fields = dict(
        id=post_id,
        slug=f"post-{post_id}",
        title=f"Post {post_id}",
        tg_status=TgStatus.PENDING,
        tg_publish_at=NOW - timedelta(minutes=minutes_ago),
    )
    fields.update(overrides)
    return make_post(**fields)


def _scheduler(repo, channel, clock, **kwargs) -> Scheduler:
    return Scheduler(repo, make_machine(repo, channel, clock), clock=clock, **kwargs)


@pytest.mark.asyncio
async def test_pass_sends_only_due_pending_posts(clock) -> None:
    repo = FakePostRepository(
        _pending(1),
        _pending(2, minutes_ago=-30),  # future
        _pending(3, tg_status=TgStatus.SENT, tg_posted_at=NOW - timedelta(days=1)),
        _pending(4, tg_status=TgStatus.ERROR, tg_error="old"),
        _pending(5, tg_publish_at=None),
        make_post(id=6, slug="never", tg_status=None),
    )
    channel = RecordingChannel()
    stats = await _scheduler(repo, channel, clock).run_pass()

    assert stats is not None
    assert stats.due == 1 and stats.sent == 1
    assert len(channel.calls) == 1
    assert repo.snapshot(1).tg_status is TgStatus.SENT
    assert repo.snapshot(2).tg_status is TgStatus.PENDING
    assert repo.snapshot(3).tg_posted_at == NOW - timedelta(days=1)
    assert repo.snapshot(4).tg_status is TgStatus.ERROR
    for post_id in repo.posts:
        assert_invariants(repo.snapshot(post_id))


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_the_pass(clock) -> None:
    repo = FakePostRepository(_pending(1, minutes_ago=30), _pending(2, minutes_ago=20), _pending(3, minutes_ago=10))
    channel = RecordingChannel(
        results=[SendResult.success(1), SendResult.failure("chat_not_found"), SendResult.success(3)],
    )
    stats = await _scheduler(repo, channel, clock, concurrency=1).run_pass()

    assert stats.sent == 2 and stats.failed == 1
    assert repo.snapshot(1).tg_status is TgStatus.SENT
    assert repo.snapshot(2).tg_status is TgStatus.ERROR
    assert repo.snapshot(2).tg_error == "chat_not_found"
    assert repo.snapshot(3).tg_status is TgStatus.SENT


@pytest.mark.asyncio
async def test_unexpected_error_on_one_post_is_contained(clock) -> None:
    repo = FakePostRepository(_pending(1, minutes_ago=30), _pending(2, minutes_ago=10))
    channel = RecordingChannel()
    scheduler = _scheduler(repo, channel, clock, concurrency=1)
    original = repo.claim_for_send

    async def flaky_claim(post_id, *args, **kwargs):
        if post_id == 1:
            raise ConnectionError("db gone")
        return await original(post_id, *args, **kwargs)

    repo.claim_for_send = flaky_claim
    stats = await scheduler.run_pass()
    assert stats.failed == 1 and stats.sent == 1
    assert repo.snapshot(2).tg_status is TgStatus.SENT


@pytest.mark.asyncio
async def test_missing_token_skips_without_state_change(clock) -> None:
    repo = FakePostRepository(_pending(1))
    channel = RecordingChannel(token=None)
    stats = await _scheduler(repo, channel, clock).run_pass()
    assert stats.skipped == 1
    assert repo.snapshot(1).tg_status is TgStatus.PENDING
    assert repo.claims == []


@pytest.mark.asyncio
async def test_overlapping_pass_is_skipped(clock) -> None:
    repo = FakePostRepository(_pending(1))
    channel = RecordingChannel(delay=0.02)
    scheduler = _scheduler(repo, channel, clock)

    first, second = await asyncio.gather(scheduler.run_pass(), scheduler.run_pass())

    assert first is not None and first.sent == 1
    assert second is None
    assert len(channel.calls) == 1


@pytest.mark.asyncio
async def test_concurrency_is_bounded(clock) -> None:
    repo = FakePostRepository(*[_pending(i, minutes_ago=60 - i) for i in range(1, 7)])
    in_flight = 0
    peak = 0
    channel = RecordingChannel()

    async def tracked_send(target, text, image=None):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return SendResult.success(1)

    channel.send = tracked_send
    stats = await _scheduler(repo, channel, clock, concurrency=2).run_pass()
    assert stats.sent == 6
    assert peak == 2


@pytest.mark.asyncio
async def test_stale_in_flight_claim_recovered_as_error(clock) -> None:
    repo = FakePostRepository(
        _pending(1, tg_status=TgStatus.SENDING, tg_attempted_at=NOW - timedelta(hours=1)),
        _pending(2, tg_status=TgStatus.SENDING, tg_attempted_at=NOW - timedelta(seconds=5)),
    )
    channel = RecordingChannel()
    stats = await _scheduler(repo, channel, clock, stale_after_sec=600).run_pass()

    assert stats.recovered == 1
    assert repo.snapshot(1).tg_status is TgStatus.ERROR
    assert repo.snapshot(1).tg_error == "send_interrupted"
    assert repo.snapshot(2).tg_status is TgStatus.SENDING
    assert channel.calls == []
    assert repo.delivery_log[0]["action"] == "stale_send_recovered"


@pytest.mark.asyncio
async def test_failure_triggers_alert(clock) -> None:
    repo = FakePostRepository(_pending(1))
    channel = RecordingChannel(results=[SendResult.failure("Forbidden: bot is not a member")])
    alert = AsyncMock()
    await _scheduler(repo, channel, clock, alert=alert).run_pass()
    alert.assert_awaited_once()
    text, key = alert.call_args[0]
    assert "#1" in text and "bot is not a member" in text
    assert key == "delivery_failed"


@pytest.mark.asyncio
async def test_run_forever_survives_tick_error_and_stops_on_cancel(clock) -> None:
    repo = FakePostRepository()
    scheduler = _scheduler(repo, RecordingChannel(), clock, interval=1)
    calls = 0

    async def failing_pass():
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("tick failed")
        raise asyncio.CancelledError()

    with patch.object(scheduler, "run_pass", side_effect=failing_pass), \
         patch("journal_publisher.services.scheduler.asyncio.sleep", new_callable=AsyncMock):
        with pytest.raises(asyncio.CancelledError):
            await scheduler.run_forever()
    assert calls == 2


@pytest.mark.asyncio
async def test_pass_leaves_in_flight_manual_send_to_its_owner(clock) -> None:
    repo = FakePostRepository(make_post(id=1))
    channel = RecordingChannel(delay=0.02)
    machine = make_machine(repo, channel, clock)
    scheduler = Scheduler(repo, machine, stale_after_sec=60, clock=clock)

    async def pass_mid_send():
        await asyncio.sleep(0.005)
        clock.advance(1)
        return await scheduler.run_pass()

    result, stats = await asyncio.gather(machine.publish_now(1), pass_mid_send())

    assert result.ok is True
    assert stats.recovered == 0
    stored = repo.snapshot(1)
    assert stored.tg_status is TgStatus.SENT
    assert stored.tg_error is None
    assert_invariants(stored)
