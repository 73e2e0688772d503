from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys

import pytest

from antnode.shutdown import (
    SHUTDOWN_DEADLINE_S,
    ShutdownOrchestrator,
    ShutdownOutcome,
    ShutdownState,
)
from tests.fakes import FakeNode
from tests.helpers import wait_until


def test_default_deadline_is_fifteen_seconds() -> None:
    assert SHUTDOWN_DEADLINE_S == 15.0
    assert ShutdownOrchestrator(FakeNode()).deadline == 15.0


@pytest.mark.asyncio
async def test_first_interrupt_moves_to_shutting_down(caplog: pytest.LogCaptureFixture) -> None:
    orchestrator = ShutdownOrchestrator(FakeNode())
    assert orchestrator.state is ShutdownState.RUNNING

    with caplog.at_level(logging.DEBUG, logger="antnode.shutdown"):
        orchestrator.notify(signal.SIGINT)
        signum = await orchestrator.wait_for_interrupt()

    assert signum == signal.SIGINT
    assert orchestrator.state is ShutdownState.SHUTTING_DOWN
    assert "received signal: SIGINT" in caplog.text
    assert "shutting down" in caplog.text


@pytest.mark.asyncio
async def test_graceful_completion() -> None:
    node = FakeNode()
    orchestrator = ShutdownOrchestrator(node, deadline=1.0)

    orchestrator.notify(signal.SIGTERM)
    outcome = await orchestrator.run()

    assert outcome is ShutdownOutcome.COMPLETED
    assert orchestrator.outcome is ShutdownOutcome.COMPLETED
    assert node.shutdown_calls == [1.0]
    assert node.finished is True


@pytest.mark.asyncio
async def test_node_shutdown_error_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    node = FakeNode(error=RuntimeError("store still open"))
    orchestrator = ShutdownOrchestrator(node, deadline=1.0)

    with caplog.at_level(logging.ERROR, logger="antnode.shutdown"):
        outcome = await orchestrator.shutdown()

    assert outcome is ShutdownOutcome.COMPLETED
    assert "shutdown: store still open" in caplog.text


@pytest.mark.asyncio
async def test_second_interrupt_forces_exit_without_cancelling_node() -> None:
    node = FakeNode(delay=0.3)
    orchestrator = ShutdownOrchestrator(node, deadline=5.0)
    orchestrator.notify(signal.SIGINT)
    await orchestrator.wait_for_interrupt()

    shutdown = asyncio.create_task(orchestrator.shutdown())
    await node.started.wait()
    orchestrator.notify(signal.SIGINT)
    outcome = await asyncio.wait_for(shutdown, timeout=1.0)

    assert outcome is ShutdownOutcome.FORCED
    assert orchestrator.outcome is ShutdownOutcome.FORCED
    assert node.finished is False
    graceful = orchestrator.graceful_task
    assert graceful is not None
    assert not graceful.cancelled()

    # The abandoned shutdown keeps running to completion in the background.
    await wait_until(lambda: node.finished)
    assert node.cancelled is False


@pytest.mark.asyncio
async def test_deadline_unblocks_without_cancelling_node() -> None:
    node = FakeNode(delay=0.3)
    orchestrator = ShutdownOrchestrator(node, deadline=0.05)

    outcome = await orchestrator.shutdown()

    assert outcome is ShutdownOutcome.DEADLINE_EXCEEDED
    assert orchestrator.outcome is ShutdownOutcome.DEADLINE_EXCEEDED
    assert orchestrator.graceful_task is not None
    assert not orchestrator.graceful_task.done()
    await wait_until(lambda: node.finished)
    assert node.cancelled is False


@pytest.mark.asyncio
async def test_interrupts_are_never_dropped() -> None:
    node = FakeNode(delay=0.3)
    orchestrator = ShutdownOrchestrator(node, deadline=5.0)
    # Both signals arrive before anyone is listening.
    orchestrator.notify(signal.SIGINT)
    orchestrator.notify(signal.SIGINT)

    outcome = await orchestrator.run()

    assert outcome is ShutdownOutcome.FORCED
    await wait_until(lambda: node.finished)


@pytest.mark.asyncio
async def test_session_is_not_reusable() -> None:
    orchestrator = ShutdownOrchestrator(FakeNode(), deadline=1.0)
    await orchestrator.shutdown()

    with pytest.raises(RuntimeError):
        await orchestrator.shutdown()
    with pytest.raises(RuntimeError):
        await orchestrator.wait_for_interrupt()


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
async def test_installed_handlers_receive_process_signals() -> None:
    orchestrator = ShutdownOrchestrator(FakeNode(), signals=(signal.SIGUSR1,))
    orchestrator.install_signal_handlers()
    try:
        os.kill(os.getpid(), signal.SIGUSR1)
        signum = await asyncio.wait_for(orchestrator.wait_for_interrupt(), timeout=2.0)
    finally:
        orchestrator.remove_signal_handlers()

    assert signum == signal.SIGUSR1
