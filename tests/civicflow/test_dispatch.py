"""Tests for the IssueDispatcher worker pool."""

import asyncio

import pytest

from src.civicflow.dispatch import IssueDispatcher
from src.civicflow.errors import WorkflowFailed
from src.civicflow.models import IssueStatus

from tests.civicflow.factories import make_submission, run_async


def test_enqueue_before_start_raises():
    dispatcher = IssueDispatcher(handler=lambda issue_id: asyncio.sleep(0))
    with pytest.raises(RuntimeError, match="not started"):
        run_async(dispatcher.enqueue("issue-1"))


def test_workers_must_be_positive():
    with pytest.raises(ValueError):
        IssueDispatcher(handler=lambda issue_id: asyncio.sleep(0), workers=0)


def test_queued_issues_processed_and_failures_isolated():
    handled = []

    async def handler(issue_id: str):
        if issue_id == "fails":
            raise WorkflowFailed("wf-1", "classifier returned an invalid result")
        if issue_id == "crashes":
            raise RuntimeError("store unavailable")
        handled.append(issue_id)

    async def scenario():
        dispatcher = IssueDispatcher(handler, workers=2, max_size=10)
        dispatcher.start()
        assert dispatcher.running
        for issue_id in ("a", "fails", "b", "crashes", "c"):
            await dispatcher.enqueue(issue_id)
        await dispatcher.join()
        await dispatcher.stop()
        return dispatcher

    dispatcher = run_async(scenario())

    assert sorted(handled) == ["a", "b", "c"]
    assert not dispatcher.running
    assert dispatcher.size == 0


def test_start_twice_keeps_one_pool():
    async def scenario():
        dispatcher = IssueDispatcher(lambda issue_id: asyncio.sleep(0), workers=3)
        dispatcher.start()
        tasks = list(dispatcher._tasks)
        dispatcher.start()
        same = dispatcher._tasks == tasks
        await dispatcher.stop()
        return same

    assert run_async(scenario()) is True


def test_submission_processed_in_background(make_orchestrator):
    orchestrator = make_orchestrator()

    async def scenario():
        dispatcher = IssueDispatcher(orchestrator.process_issue, workers=2)
        dispatcher.start()
        orchestrator.dispatcher = dispatcher
        receipt = await orchestrator.submit_issue(make_submission())
        assert receipt.status == IssueStatus.RECEIVED
        await dispatcher.join()
        await dispatcher.stop()
        return await orchestrator.get_issue(receipt.tracking_id)

    issue = run_async(scenario())
    assert issue.status == IssueStatus.PROCESSED


def test_full_queue_does_not_block_enqueue():
    release = asyncio.Event()
    handled = []

    async def handler(issue_id: str):
        await release.wait()
        handled.append(issue_id)

    async def scenario():
        dispatcher = IssueDispatcher(handler, workers=1, max_size=1)
        dispatcher.start()
        accepted = []
        for issue_id in ("a", "b", "c", "d"):
            accepted.append(await asyncio.wait_for(dispatcher.enqueue(issue_id), timeout=1.0))
            await asyncio.sleep(0)
        parked = dispatcher.backlog
        release.set()
        await dispatcher.join()
        await dispatcher.stop()
        return accepted, parked

    accepted, parked = run_async(scenario())

    # The worker holds "a", "b" fills the only slot, the rest overflow
    assert accepted == [True, True, False, False]
    assert parked == 2
    assert handled == ["a", "b", "c", "d"]
