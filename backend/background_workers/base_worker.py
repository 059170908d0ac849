import asyncio
from typing import Any, Dict, Optional
from backend.background_workers.constants import DEFAULT_QUEUE_SIZE, SENTINEL, logger
from backend.background_workers.outbox_worker_handler import SideEffectHandler


class SideEffectWorker():
    """In-process consumers for committed outbox messages.

    `publish` never blocks the request path; a full queue just drops the
    message and the outbox publisher picks the row up later.
    """

    def __init__(self, workers_count: int = 2, max_queue_size: int = DEFAULT_QUEUE_SIZE,
                 handler: Optional[SideEffectHandler] = None):
        self.queue: asyncio.Queue[Optional[Dict[str, Any]]] = asyncio.Queue(maxsize=max_queue_size)
        self.worker_loops: Dict[str, asyncio.Task] = {}
        self.workers_count: int = workers_count
        self.handler = handler or SideEffectHandler()
        self._processed = 0

    def start(self):
        if not self.worker_loops:
            for i in range(self.workers_count):
                cur_worker_name = f"SideEffectWorker:{i+1}"
                self.worker_loops[cur_worker_name] = asyncio.create_task(self._worker_loop(cur_worker_name))
                logger.info("[%s] started", cur_worker_name)

    def publish(self, topic: str, message: Dict[str, Any]) -> bool:
        try:
            self.queue.put_nowait({**message, "topic": topic})
            return True
        except asyncio.QueueFull:
            logger.warning("side_effects.queue_full", extra={"topic": topic,
                                                              "outbox_event_id": message.get("outbox_event_id")})
            return False

    async def stop(self):
        """Send one sentinel per loop."""
        for _ in range(self.workers_count):
            await self.queue.put(SENTINEL)

    async def shutdown(self, *, drain_first: bool = True, drain_timeout: float = 30.0, wait_timeout: float = 30.0):
        """Graceful stop: optionally wait for the queue to drain, then send sentinels and await the loops."""
        if drain_first:
            try:
                await asyncio.wait_for(self.queue.join(), timeout=drain_timeout)
                logger.debug("side_effects.queue_drained")
            except asyncio.TimeoutError:
                logger.warning("side_effects.drain_timeout", extra={"pending": self.queue.qsize()})

        await self.stop()

        for name, task in self.worker_loops.items():
            try:
                await asyncio.wait_for(task, timeout=wait_timeout)
            except asyncio.TimeoutError:
                logger.warning("[%s] worker did not finish; cancelling", name)
                task.cancel()
        self.worker_loops.clear()

    async def _worker_loop(self, cur_worker_name: str):
        logger.info("[%s] loop running", cur_worker_name)
        while True:
            qitem = await self.queue.get()
            try:
                if qitem is SENTINEL:
                    logger.info("[%s] sentinel received; exiting loop", cur_worker_name)
                    break
                try:
                    await self.handler.handle(qitem, cur_worker_name)
                    self._processed += 1
                except Exception:
                    # row stays PENDING; the outbox publisher re-drives it
                    logger.exception("[%s] handler threw for outbox_event=%s", cur_worker_name,
                                     qitem.get("outbox_event_id"))
            finally:
                self.queue.task_done()

        logger.info("[%s] exiting after %d tasks", cur_worker_name, self._processed)
