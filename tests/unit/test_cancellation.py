import asyncio

import pytest

from arena.application.concurrency.cancellation import (
    CancellationToken,
    CancelReason,
    DeadlineGuard,
    OperationCancelledError,
    shielded,
)


def test_cancel_is_idempotent_and_keeps_first_reason() -> None:
    token = CancellationToken()
    reasons: list[CancelReason] = []
    token.add_callback(reasons.append)

    assert token.cancel(CancelReason.TIMEOUT) is True
    assert token.cancel(CancelReason.ABORTED) is False
    assert token.reason is CancelReason.TIMEOUT
    assert reasons == [CancelReason.TIMEOUT]


def test_unsubscribed_callback_is_not_called() -> None:
    token = CancellationToken()
    reasons: list[CancelReason] = []
    unsubscribe = token.add_callback(reasons.append)

    unsubscribe()
    token.cancel()

    assert reasons == []


def test_callback_added_after_cancel_runs_immediately() -> None:
    token = CancellationToken()
    token.cancel(CancelReason.SUPERSEDED)
    reasons: list[CancelReason] = []

    token.add_callback(reasons.append)

    assert reasons == [CancelReason.SUPERSEDED]


def test_merged_token_fires_when_any_parent_is_cancelled() -> None:
    client = CancellationToken()
    supersede = CancellationToken()
    merged = CancellationToken.merge(client, supersede, None)

    supersede.cancel(CancelReason.SUPERSEDED)

    assert merged.cancelled
    assert merged.reason is CancelReason.SUPERSEDED
    assert not client.cancelled


def test_closed_link_no_longer_follows_parent() -> None:
    parent = CancellationToken()
    child = parent.link()

    child.close()
    parent.cancel()

    assert not child.cancelled


def test_child_cancellation_does_not_propagate_to_parent() -> None:
    parent = CancellationToken()
    with parent.link() as child:
        child.cancel()

    assert not parent.cancelled


@pytest.mark.asyncio
async def test_run_returns_result_when_not_cancelled() -> None:
    token = CancellationToken()

    async def compute() -> int:
        await asyncio.sleep(0)
        return 42

    assert await token.run(compute()) == 42


@pytest.mark.asyncio
async def test_run_interrupts_pending_awaitable() -> None:
    token = CancellationToken()
    interrupted = asyncio.Event()

    async def wait_forever() -> None:
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            interrupted.set()
            raise

    asyncio.get_running_loop().call_later(0.01, token.cancel, CancelReason.ABORTED)

    with pytest.raises(OperationCancelledError) as exc_info:
        await token.run(wait_forever())

    assert exc_info.value.reason is CancelReason.ABORTED
    assert interrupted.is_set()


@pytest.mark.asyncio
async def test_run_rejects_when_already_cancelled() -> None:
    token = CancellationToken()
    token.cancel()

    with pytest.raises(OperationCancelledError):
        await token.run(asyncio.sleep(1))


@pytest.mark.asyncio
async def test_idle_deadline_cancels_with_timeout() -> None:
    token = CancellationToken()

    with DeadlineGuard(token, overall_seconds=None, idle_seconds=0.02):
        with pytest.raises(OperationCancelledError) as exc_info:
            await token.run(asyncio.sleep(1))

    assert exc_info.value.is_timeout


@pytest.mark.asyncio
async def test_touch_postpones_idle_deadline() -> None:
    token = CancellationToken()

    with DeadlineGuard(token, overall_seconds=None, idle_seconds=0.05) as guard:
        for _ in range(4):
            await asyncio.sleep(0.02)
            guard.touch()

        assert not token.cancelled


@pytest.mark.asyncio
async def test_overall_deadline_fires_despite_activity() -> None:
    token = CancellationToken()

    with DeadlineGuard(token, overall_seconds=0.03, idle_seconds=1.0) as guard:
        for _ in range(5):
            await asyncio.sleep(0.02)
            guard.touch()

    assert token.reason is CancelReason.TIMEOUT


@pytest.mark.asyncio
async def test_closed_guard_does_not_fire() -> None:
    token = CancellationToken()
    guard = DeadlineGuard(token, overall_seconds=0.01)
    guard.start()
    guard.close()

    await asyncio.sleep(0.03)

    assert not token.cancelled


@pytest.mark.asyncio
async def test_shielded_work_completes_after_caller_is_cancelled() -> None:
    finished = asyncio.Event()

    async def cleanup() -> None:
        await asyncio.sleep(0.02)
        finished.set()

    caller = asyncio.create_task(shielded(cleanup()))
    await asyncio.sleep(0)
    caller.cancel()

    with pytest.raises(asyncio.CancelledError):
        await caller
    await asyncio.wait_for(finished.wait(), timeout=1)
