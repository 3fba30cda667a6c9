import asyncio
import inspect
import logging

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs ``fn`` every ``interval`` seconds on the event loop until stopped.

    A failing run is logged and the loop carries on.
    """

    def __init__(self, name, interval, fn, sleep=None):
        self.name = name
        self.interval = interval
        self.fn = fn
        self.sleep = sleep or asyncio.sleep
        self.runs = 0
        self._task = None

    async def run_once(self):
        try:
            result = self.fn()
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception:
            logger.exception("Periodic task %s failed", self.name)
            return None
        finally:
            self.runs += 1

    async def _loop(self):
        while True:
            await self.sleep(self.interval)
            await self.run_once()

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._loop(), name=self.name)
            logger.info("Started periodic task %s every %ss", self.name, self.interval)
        return self._task

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Stopped periodic task %s", self.name)
