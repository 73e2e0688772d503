"""Interrupt-driven shutdown of a running node.

The orchestrator has two states. While *running* it waits for the first
interrupt. In *shutting down* it starts the node's graceful shutdown and
races it against a second interrupt and a deadline; whichever comes first
decides the outcome. A graceful shutdown that loses the race is left to run
in the background and is never cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import threading
from collections.abc import Iterable
from enum import StrEnum

from antnode.protocols.node import NodeHandle

logger = logging.getLogger(__name__)

SHUTDOWN_DEADLINE_S = 15.0
DEFAULT_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)


class ShutdownState(StrEnum):
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"


class ShutdownOutcome(StrEnum):
    COMPLETED = "completed"
    FORCED = "forced"
    DEADLINE_EXCEEDED = "deadline_exceeded"


def signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


class ShutdownOrchestrator:
    """One shutdown session for one node; not reusable."""

    def __init__(
        self,
        node: NodeHandle,
        *,
        deadline: float = SHUTDOWN_DEADLINE_S,
        signals: Iterable[int] = DEFAULT_SIGNALS,
    ) -> None:
        self._node = node
        self._deadline = deadline
        self._signals = tuple(signals)
        # Unbounded, so a signal delivered while nobody is waiting is kept.
        self._interrupts: asyncio.Queue[int] = asyncio.Queue()
        self._state = ShutdownState.RUNNING
        self._consumed = False
        self._graceful: asyncio.Task[None] | None = None
        self._outcome: ShutdownOutcome | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_handlers: list[int] = []
        self._previous_handlers: dict[int, object] = {}

    @property
    def state(self) -> ShutdownState:
        return self._state

    @property
    def deadline(self) -> float:
        return self._deadline

    @property
    def outcome(self) -> ShutdownOutcome | None:
        """How the shutdown ended, or None while it has not."""
        return self._outcome

    @property
    def graceful_task(self) -> asyncio.Task[None] | None:
        """The node shutdown task, still referenced after it was abandoned."""
        return self._graceful

    def notify(self, signum: int) -> None:
        """Record an interrupt. Must be called on the orchestrator's loop."""
        self._interrupts.put_nowait(signum)

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        self._loop = loop
        for signum in self._signals:
            try:
                loop.add_signal_handler(signum, self.notify, signum)
            except (NotImplementedError, RuntimeError, ValueError):
                self._install_fallback_handler(loop, signum)
            else:
                self._loop_handlers.append(signum)

    def _install_fallback_handler(self, loop: asyncio.AbstractEventLoop, signum: int) -> None:
        if threading.current_thread() is not threading.main_thread():
            logger.debug("cannot watch %s outside the main thread", signal_name(signum))
            return

        def _handler(received: int, _frame: object) -> None:
            loop.call_soon_threadsafe(self.notify, received)

        self._previous_handlers[signum] = signal.signal(signum, _handler)

    def remove_signal_handlers(self) -> None:
        if self._loop is not None:
            for signum in self._loop_handlers:
                self._loop.remove_signal_handler(signum)
        self._loop_handlers.clear()
        for signum, previous in self._previous_handlers.items():
            signal.signal(signum, previous)  # type: ignore[arg-type]
        self._previous_handlers.clear()

    async def wait_for_interrupt(self) -> int:
        """Block until the first interrupt, then switch to shutting down."""
        if self._state is not ShutdownState.RUNNING:
            raise RuntimeError("shutdown already in progress")
        signum = await self._interrupts.get()
        logger.debug("received signal: %s", signal_name(signum))
        logger.info("shutting down")
        self._state = ShutdownState.SHUTTING_DOWN
        return signum

    async def _graceful_shutdown(self) -> None:
        try:
            await self._node.shutdown(self._deadline)
        except Exception as exc:
            logger.error("shutdown: %s", exc)

    async def shutdown(self) -> ShutdownOutcome:
        """Shut the node down and report which event ended the wait."""
        if self._consumed:
            raise RuntimeError("shutdown session has already been used")
        self._consumed = True
        self._state = ShutdownState.SHUTTING_DOWN

        self._graceful = asyncio.create_task(self._graceful_shutdown(), name="node-shutdown")
        second_interrupt = asyncio.ensure_future(self._interrupts.get())
        try:
            done, _ = await asyncio.wait(
                {self._graceful, second_interrupt},
                timeout=self._deadline,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if not second_interrupt.done():
                second_interrupt.cancel()

        if self._graceful in done:
            self._outcome = ShutdownOutcome.COMPLETED
        elif second_interrupt in done:
            logger.debug("received signal: %s", signal_name(second_interrupt.result()))
            logger.warning("node shutdown abandoned, exiting")
            self._outcome = ShutdownOutcome.FORCED
        else:
            logger.warning("node shutdown did not finish within %ss", self._deadline)
            self._outcome = ShutdownOutcome.DEADLINE_EXCEEDED
        return self._outcome

    async def run(self) -> ShutdownOutcome:
        await self.wait_for_interrupt()
        return await self.shutdown()


__all__ = [
    "DEFAULT_SIGNALS",
    "SHUTDOWN_DEADLINE_S",
    "ShutdownOrchestrator",
    "ShutdownOutcome",
    "ShutdownState",
    "signal_name",
]
