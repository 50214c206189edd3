"""
Queue worker entry point.

Run with ``python -m sermonclips.worker``. Consumes the Redis job queue with
a bounded number of concurrent jobs, each under a wall-clock deadline.
"""

import asyncio
import logging
import signal
from typing import Any, Optional

from sermonclips.config import Settings, get_settings
from sermonclips.db import create_db_engine, create_session_factory, init_db
from sermonclips.services.analysis_client import AnalysisClient
from sermonclips.services.dubbing_service import DubbingService
from sermonclips.services.job_queue import Job, JobQueue, create_redis_client
from sermonclips.services.lipsync_service import LipsyncService
from sermonclips.services.media_transform import MediaTransformEngine
from sermonclips.services.orchestrator import ClipOrchestrator, Processor
from sermonclips.services.record_store import RecordStore
from sermonclips.services.storage_gateway import StorageGateway

logger = logging.getLogger(__name__)


class Worker:
    """
    Pulls jobs from a queue and runs the matching processor.

    Features:
    - Semaphore-bounded concurrency
    - Per-job timeout via asyncio.wait_for
    - Lock heartbeat while a job runs
    - Delayed-job promotion and stalled-job recovery
    - Graceful stop that lets in-flight jobs finish
    """

    def __init__(
        self,
        queue: JobQueue,
        processors: dict[str, Processor],
        concurrency: int = 2,
        job_timeout_seconds: float = 3600,
        poll_interval_seconds: float = 1.0,
        stalled_check_interval_seconds: float = 30,
    ):
        self.queue = queue
        self.processors = processors
        self.concurrency = concurrency
        self.job_timeout_seconds = job_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.stalled_check_interval_seconds = stalled_check_interval_seconds

        self._semaphore = asyncio.Semaphore(concurrency)
        self._stopping = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()

    def stop(self) -> None:
        """Stop taking new jobs; running jobs finish."""
        if not self._stopping.is_set():
            logger.info("Worker stopping, waiting for in-flight jobs...")
            self._stopping.set()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    async def run(self) -> None:
        logger.info(
            f"Worker started on queue '{self.queue.name}' "
            f"(concurrency={self.concurrency}, timeout={self.job_timeout_seconds}s)"
        )

        await self.queue.requeue_stalled()
        loop = asyncio.get_event_loop()
        last_stalled_check = loop.time()

        while not self.stopping:
            await self._semaphore.acquire()
            if self.stopping:
                self._semaphore.release()
                break

            try:
                await self.queue.promote_delayed()

                if loop.time() - last_stalled_check >= self.stalled_check_interval_seconds:
                    await self.queue.requeue_stalled()
                    last_stalled_check = loop.time()

                job = await self.queue.reserve()
            except Exception as e:
                self._semaphore.release()
                logger.exception(f"Queue error in worker loop: {e}")
                await self._idle()
                continue

            if job is None:
                self._semaphore.release()
                await self._idle()
                continue

            task = asyncio.create_task(self._run_job(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Worker stopped")

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval_seconds)
        except asyncio.TimeoutError:
            pass

    async def _run_job(self, job: Job) -> None:
        try:
            await self.process_job(job)
        finally:
            self._semaphore.release()

    async def process_job(self, job: Job) -> Job:
        """Run one reserved job to completion or failure and record the outcome."""
        processor = self.processors.get(job.name)
        if processor is None:
            return await self.queue.fail(job, f"No processor registered for job '{job.name}'")

        logger.info(f"Processing job {job.id} ({job.name})")

        async def report_progress(percent: int) -> None:
            stored = await self.queue.update_progress(job.id, percent)
            job.progress = stored

        heartbeat = asyncio.create_task(self._heartbeat(job))
        try:
            result: Any = await asyncio.wait_for(
                processor(job, report_progress),
                timeout=self.job_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return await self.queue.fail(job, f"Job timed out after {self.job_timeout_seconds}s")
        except Exception as e:
            return await self.queue.fail(job, str(e) or type(e).__name__)
        finally:
            heartbeat.cancel()

        return await self.queue.complete(job, result)

    async def _heartbeat(self, job: Job) -> None:
        """Keep the job lock alive at a third of its lifetime."""
        interval = max(self.queue.lock_seconds / 3, 1)
        while True:
            await asyncio.sleep(interval)
            if not await self.queue.extend_lock(job):
                logger.warning(f"Lost lock for job {job.id}; it may be picked up by another worker")
                return


def build_orchestrator(settings: Settings, store: RecordStore) -> ClipOrchestrator:
    storage = StorageGateway(settings)
    media = MediaTransformEngine(settings)
    return ClipOrchestrator(
        store=store,
        storage=storage,
        media=media,
        analysis=AnalysisClient(storage, settings),
        dubbing=DubbingService(media, settings),
        lipsync=LipsyncService(settings),
        settings=settings,
    )


async def run_worker(settings: Optional[Settings] = None) -> None:
    """Build every dependency, run until signalled, then tear down."""
    settings = settings or get_settings()

    engine = create_db_engine(settings.database_url)
    init_db(engine)
    store = RecordStore(create_session_factory(engine))

    redis_client = create_redis_client(settings.redis_url)
    queue = JobQueue(
        redis_client,
        name=settings.queue_name,
        rate_limit_max=settings.queue_rate_limit_max,
        rate_limit_window_seconds=settings.queue_rate_limit_window_seconds,
        lock_seconds=settings.job_lock_seconds,
    )

    orchestrator = build_orchestrator(settings, store)
    worker = Worker(
        queue,
        orchestrator.processors(),
        concurrency=settings.worker_concurrency,
        job_timeout_seconds=settings.job_timeout_seconds,
        poll_interval_seconds=settings.worker_poll_interval_seconds,
        stalled_check_interval_seconds=settings.stalled_check_interval_seconds,
    )

    loop = asyncio.get_event_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            signal.signal(sig, lambda *_: worker.stop())

    try:
        await queue.ping()
        logger.info(f"Connected to Redis at {settings.redis_url}")
        await worker.run()
    finally:
        await orchestrator.analysis.close()
        if orchestrator.dubbing:
            await orchestrator.dubbing.close()
        if orchestrator.lipsync:
            await orchestrator.lipsync.close()
        await redis_client.aclose()
        engine.dispose()
        logger.info("Shutdown complete")


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()
