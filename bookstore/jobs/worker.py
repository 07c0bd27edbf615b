"""
Jobs — ワーカープール (Worker Pool)

(キュー名, ジョブ種別) ごとにハンドラを 1 つ登録する。
キューごとに concurrency 個のワーカータスクが competing consumers として
ジョブを取り合い、ハンドラを実行する。

  - ハンドラが正常終了 → ack (completed, 再配送なし)
  - PermanentJobError → リトライせずに failed
  - その他の例外      → nack してリトライ (max_attempts まで)

stop() は新しいジョブの取得をやめ、処理中のハンドラが終わるのを待つ。
ハンドラを途中で殺すことはない。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from ..config import Settings
from ..errors import JobPermanentFailure, PermanentJobError
from .payloads import JOB_KINDS
from .queue import Job, JobQueue

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None]]
FailureHook = Callable[[Job, JobPermanentFailure], Awaitable[None]]


class WorkerPool:
    def __init__(
        self,
        queue: JobQueue,
        concurrency: int = 2,
        poll_interval: float = 0.5,
        on_permanent_failure: FailureHook | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self._on_permanent_failure = on_permanent_failure
        self._handlers: dict[tuple[str, str], Handler] = {}
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._current: dict[str, Job | None] = {}

    @classmethod
    def from_settings(
        cls,
        queue: JobQueue,
        settings: Settings,
        on_permanent_failure: FailureHook | None = None,
    ) -> "WorkerPool":
        return cls(
            queue,
            concurrency=settings.worker_concurrency,
            poll_interval=settings.worker_poll_interval,
            on_permanent_failure=on_permanent_failure,
        )

    # ── 登録 ─────────────────────────────────────

    def register(self, queue_name: str, kind: str, handler: Handler) -> None:
        if kind not in JOB_KINDS:
            raise ValueError(f"Unknown job kind: {kind!r}")
        key = (queue_name, kind)
        if key in self._handlers:
            raise ValueError(f"Handler already registered for {queue_name}/{kind}")
        self._handlers[key] = handler

    @property
    def queue_names(self) -> list[str]:
        return sorted({queue_name for queue_name, _ in self._handlers})

    # ── 起動 / 停止 ──────────────────────────────

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self.running:
            raise RuntimeError("Worker pool is already running")
        self._stopping.clear()
        for queue_name in self.queue_names:
            for index in range(self.concurrency):
                name = f"{queue_name}-worker-{index + 1}"
                self._current[name] = None
                self._tasks.append(asyncio.create_task(self._run(name, queue_name), name=name))
        logger.info(
            "Started %d worker(s) for queues: %s",
            len(self._tasks), ", ".join(self.queue_names),
        )

    async def stop(self) -> None:
        """新規取得を止め、処理中のジョブが終わるまで待つ。"""
        self._stopping.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Worker pool stopped")

    def status(self) -> dict[str, str | None]:
        """ワーカー名 → 処理中のジョブ ID (待機中なら None)"""
        return {
            name: None if job is None else job.id
            for name, job in self._current.items()
        }

    # ── 実行 ─────────────────────────────────────

    async def _run(self, name: str, queue_name: str) -> None:
        while not self._stopping.is_set():
            try:
                job = await self.queue.dequeue(queue_name, timeout=self.poll_interval)
            except Exception:
                logger.exception("%s: failed to fetch a job", name)
                await asyncio.sleep(self.poll_interval)
                continue
            if job is None:
                continue
            self._current[name] = job
            try:
                await self.process(job)
            except Exception:
                # ack / nack に失敗したジョブは processing に残り、requeue_in_flight で戻る
                logger.exception("%s: failed to report result of job %s", name, job.id)
                await asyncio.sleep(self.poll_interval)
            finally:
                self._current[name] = None

    async def run_once(self, queue_name: str, timeout: float | None = 0) -> Job | None:
        """1 件だけ取り出して処理する。ジョブが無ければ None。"""
        job = await self.queue.dequeue(queue_name, timeout=timeout)
        if job is not None:
            await self.process(job)
        return job

    async def process(self, job: Job) -> None:
        handler = self._handlers.get((job.queue, job.kind))
        if handler is None:
            await self._nack(job, retryable=False, error=f"No handler for {job.queue}/{job.kind}")
            return
        try:
            await handler(job.payload)
        except PermanentJobError as e:
            logger.warning("Job %s (%s) rejected: %s", job.id, job.kind, e)
            await self._nack(job, retryable=False, error=str(e))
        except Exception as e:
            logger.exception(
                "Job %s (%s) failed on attempt %d", job.id, job.kind, job.attempts
            )
            await self._nack(job, retryable=True, error=f"{type(e).__name__}: {e}")
        else:
            await self.queue.ack(job)
            logger.info("Job %s (%s) completed", job.id, job.kind)

    async def _nack(self, job: Job, retryable: bool, error: str) -> None:
        status = await self.queue.nack(job, retryable=retryable, error=error)
        if status != "failed" or self._on_permanent_failure is None:
            return
        failure = JobPermanentFailure(job.id, job.kind, job.attempts, error)
        try:
            await self._on_permanent_failure(job, failure)
        except Exception:
            logger.exception("Permanent failure hook raised for job %s", job.id)
