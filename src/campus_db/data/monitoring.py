"""
Connection Health Monitoring

Background asyncio task sampling the connection readiness state at a fixed interval.
Every sample updates the ``campus_db_connection_state`` gauge, and any state other
than ``connected`` is logged as a warning. The monitor runs independently of retry
loops in flight and is owned by the connection manager.
"""

import asyncio
from typing import Callable, Optional

from campus_db.data.events import ConnectionState
from campus_db.monitoring.logging import DatabaseLogger, get_logger
from campus_db.monitoring.metrics import connection_state as connection_state_gauge


class HealthMonitor:
    """
    Recurring connection state sampler.

    Args:
        state_provider: Callable returning the current ``ConnectionState``
        interval: Seconds between samples
        logger: Logger collaborator
        sleep: Awaitable sleep, ``asyncio.sleep`` by default
    """

    def __init__(self, state_provider: Callable[[], ConnectionState],
                 interval: float = 30.0,
                 logger: Optional[DatabaseLogger] = None,
                 sleep: Callable = asyncio.sleep):
        self.state_provider = state_provider
        self.interval = interval
        self.logger = logger or get_logger(__name__)
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def check(self) -> ConnectionState:
        """Sample the state once; returns the sampled state."""
        state = self.state_provider()
        connection_state_gauge.set(state.code)
        if state is not ConnectionState.CONNECTED:
            self.logger.warning(
                f"MongoDB connection state: {state.value}",
                state=state.value,
                state_code=state.code,
            )
        return state

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval)
            try:
                self.check()
            except Exception as e:
                self.logger.error("Connection health check failed", error=e)

    def start(self) -> None:
        """Start the monitor task on the running loop. No-op when already running."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        self.logger.debug("Connection health monitor started", interval=self.interval)

    async def stop(self) -> None:
        """Cancel the monitor task and wait for it to finish."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self.logger.debug("Connection health monitor stopped")


__all__ = ['HealthMonitor']
