"""Run a start/stop pair in the foreground or under the Windows service manager."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import sys
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

SERVICE_NAME = "AntNodeSvc"
SERVICE_DISPLAY_NAME = "Ant node"

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Program:
    """``start`` blocks for the lifetime of the node; ``stop`` tears it down."""

    start: Callable[[], Awaitable[None]]
    stop: Callable[[], Awaitable[None]]


async def run_foreground(program: Program) -> None:
    try:
        await program.start()
    finally:
        await program.stop()


async def _await(awaitable: Awaitable[T]) -> T:
    return await awaitable


class ServiceRunner:
    """Owns an event loop on a background thread for service-managed runs.

    The service manager calls :meth:`start` and :meth:`stop` from its own
    threads; both hand work to the loop and never run coroutines inline.
    """

    def __init__(self, *, thread_name: str = "ant-service-loop") -> None:
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name=thread_name, daemon=True)
        self._lock = threading.Lock()
        self._program: Program | None = None
        self._start_future: concurrent.futures.Future[None] | None = None
        self._stopped = False
        self._thread.start()

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    def run_sync(self, awaitable: Awaitable[T]) -> T:
        """Run ``awaitable`` on the service loop and wait for its result."""
        self._ensure_not_loop_thread()
        return asyncio.run_coroutine_threadsafe(_await(awaitable), self._loop).result()

    def start(self, program: Program) -> None:
        with self._lock:
            if self._stopped:
                raise RuntimeError("service runner is stopped")
            if self._program is not None:
                raise RuntimeError("service already started")
            self._program = program
            self._start_future = asyncio.run_coroutine_threadsafe(_await(program.start()), self._loop)
        self._start_future.add_done_callback(_log_start_result)

    def stop(self, timeout: float | None = None) -> None:
        """Run ``program.stop`` on the loop, then stop the loop. Idempotent."""
        self._ensure_not_loop_thread()
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            program = self._program
            start_future = self._start_future

        try:
            if start_future is not None and not start_future.done():
                start_future.cancel()
            if program is not None:
                asyncio.run_coroutine_threadsafe(_await(program.stop()), self._loop).result(timeout)
        finally:
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(timeout)
            if not self._thread.is_alive():
                self._loop.close()

    def wait(self, timeout: float | None = None) -> None:
        """Block until ``program.start`` returns, fails or is cancelled."""
        if self._start_future is None:
            raise RuntimeError("service not started")
        concurrent.futures.wait([self._start_future], timeout=timeout)

    def _ensure_not_loop_thread(self) -> None:
        if threading.current_thread() is self._thread:
            raise RuntimeError("cannot block on the service loop from its own thread")


def _log_start_result(future: concurrent.futures.Future[Any]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("service start: %s", exc)


def is_windows_service() -> bool:
    """True when this process was launched by the Windows service control manager."""
    if sys.platform != "win32":
        return False
    import servicemanager

    return bool(servicemanager.RunningAsService())


def run_windows_service(runner: ServiceRunner, program: Program, *, service_name: str = SERVICE_NAME) -> None:
    """Hand the process to the service control manager until it stops us."""
    import servicemanager
    import win32event
    import win32service
    import win32serviceutil

    class AntNodeService(win32serviceutil.ServiceFramework):
        _svc_name_ = service_name
        _svc_display_name_ = SERVICE_DISPLAY_NAME
        _svc_description_ = "Ant storage network node."

        def __init__(self, args: Any) -> None:
            win32serviceutil.ServiceFramework.__init__(self, args)
            self.stop_event = win32event.CreateEvent(None, 0, 0, None)

        def SvcStop(self) -> None:
            self.ReportServiceStatus(win32service.SERVICE_STOP_PENDING)
            try:
                runner.stop()
            finally:
                win32event.SetEvent(self.stop_event)

        def SvcDoRun(self) -> None:
            servicemanager.LogInfoMsg(f"{service_name} started.")
            runner.start(program)
            win32event.WaitForSingleObject(self.stop_event, win32event.INFINITE)

    servicemanager.Initialize()
    servicemanager.PrepareToHostSingle(AntNodeService)
    servicemanager.StartServiceCtrlDispatcher()


__all__ = [
    "Program",
    "SERVICE_NAME",
    "ServiceRunner",
    "is_windows_service",
    "run_foreground",
    "run_windows_service",
]
