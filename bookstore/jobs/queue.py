"""
Jobs — ジョブキュー (Job Queue)

注文確定メールや画像のリサイズなど、遅い副作用をリクエスト処理から切り離す。

配送の約束事:
  - enqueue はコンシューマの有無に関係なくすぐ戻る
  - 1 つのジョブを同時に受け取るワーカーは 1 つだけ (competing consumers)
  - 同じキュー内はだいたい FIFO。別のジョブ同士の完了順は保証しない
  - at-least-once: 失敗したジョブは捨てずに再配送する
    → ハンドラは重複配送に耐えるように書くこと
  - max_attempts 回失敗したら failed にしてオペレーター確認用に残す

ここではプロトコルとインメモリ実装を定義する。
プロセス再起動をまたいで残したい場合は redis_queue.RedisJobQueue を使う。
"""

import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Protocol
from uuid import uuid4

from pydantic import BaseModel

from ..config import Settings
from ..errors import JobPermanentFailure
from .payloads import dump_payload, parse_payload

logger = logging.getLogger(__name__)

JobStatus = Literal["pending", "active", "completed", "failed"]


@dataclass
class Job:
    id: str
    queue: str
    kind: str
    payload: BaseModel
    enqueued_at: datetime
    attempts: int = 0
    status: JobStatus = "pending"
    last_error: str | None = None

    @classmethod
    def new(cls, queue_name: str, kind: str, payload) -> "Job":
        return cls(
            id=uuid4().hex,
            queue=queue_name,
            kind=kind,
            payload=parse_payload(kind, payload),
            enqueued_at=datetime.now(timezone.utc),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "queue": self.queue,
            "kind": self.kind,
            "payload": dump_payload(self.payload),
            "enqueued_at": self.enqueued_at.isoformat(),
            "attempts": self.attempts,
            "status": self.status,
            "last_error": self.last_error,
        }


class JobQueue(Protocol):
    max_attempts: int

    async def enqueue(self, queue_name: str, kind: str, payload) -> Job: ...

    async def dequeue(self, queue_name: str, timeout: float | None = None) -> Job | None: ...

    async def ack(self, job: Job) -> None: ...

    async def nack(self, job: Job, retryable: bool = True, error: str | None = None) -> JobStatus: ...

    async def get_job(self, job_id: str) -> Job | None: ...

    async def list_failed(self, queue_name: str) -> list[Job]: ...


async def enqueue_best_effort(
    queue: JobQueue,
    queue_name: str,
    kind: str,
    payload,
    timeout: float,
) -> Job | None:
    """
    コミット済みの処理に付随するジョブを投入する。

    timeout 秒で打ち切り、失敗してもログに残すだけで例外は投げない。
    呼び出し元の結果 (注文など) が正であり、通知はベストエフォート。
    """
    try:
        job = await asyncio.wait_for(queue.enqueue(queue_name, kind, payload), timeout)
    except asyncio.TimeoutError:
        logger.warning(
            "Timed out enqueueing %s on %s after %.2fs", kind, queue_name, timeout
        )
        return None
    except Exception:
        logger.exception("Failed to enqueue %s on %s", kind, queue_name)
        return None
    logger.info("Enqueued %s job %s on %s", kind, job.id, queue_name)
    return job


class InMemoryJobQueue:
    """単一プロセス用のジョブキュー。asyncio.Condition で待機中のワーカーを起こす。"""

    def __init__(self, max_attempts: int = 3, retry_delay: float = 0.0) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._jobs: dict[str, Job] = {}
        self._ready: dict[str, deque[str]] = defaultdict(deque)
        self._failed: dict[str, list[str]] = defaultdict(list)
        self._not_empty = asyncio.Condition()
        self._timers: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> "InMemoryJobQueue":
        return cls(settings.job_max_attempts, settings.job_retry_delay)

    # ── 投入 / 取得 ──────────────────────────────

    async def enqueue(self, queue_name: str, kind: str, payload) -> Job:
        job = Job.new(queue_name, kind, payload)
        async with self._not_empty:
            self._jobs[job.id] = job
            self._ready[queue_name].append(job.id)
            self._not_empty.notify_all()
        return job

    async def dequeue(self, queue_name: str, timeout: float | None = None) -> Job | None:
        """
        ジョブが来るまで待って 1 件取り出す。

        timeout=None なら無期限に待つ (タスクのキャンセルで中断できる)。
        タイムアウトした場合は None を返す。
        """
        ready = self._ready[queue_name]
        async with self._not_empty:
            if not ready:
                try:
                    await asyncio.wait_for(
                        self._not_empty.wait_for(lambda: bool(ready)), timeout
                    )
                except asyncio.TimeoutError:
                    return None
            job = self._jobs[ready.popleft()]
            job.attempts += 1
            job.status = "active"
            return job

    # ── 結果の報告 ───────────────────────────────

    async def ack(self, job: Job) -> None:
        async with self._not_empty:
            if job.status != "active":
                logger.warning("Ignoring ack for job %s in status %s", job.id, job.status)
                return
            job.status = "completed"
            job.last_error = None

    async def nack(self, job: Job, retryable: bool = True, error: str | None = None) -> JobStatus:
        async with self._not_empty:
            if job.status != "active":
                logger.warning("Ignoring nack for job %s in status %s", job.id, job.status)
                return job.status
            job.last_error = error
            if retryable and job.attempts < self.max_attempts:
                job.status = "pending"
                if self.retry_delay > 0:
                    self._schedule_retry(job)
                else:
                    self._ready[job.queue].append(job.id)
                    self._not_empty.notify_all()
                logger.info(
                    "Job %s (%s) will be retried (attempt %d/%d)",
                    job.id, job.kind, job.attempts, self.max_attempts,
                )
            else:
                job.status = "failed"
                self._failed[job.queue].append(job.id)
                logger.error(
                    "%s", JobPermanentFailure(job.id, job.kind, job.attempts, error or "unknown")
                )
            return job.status

    def _schedule_retry(self, job: Job) -> None:
        task = asyncio.get_running_loop().create_task(self._release_later(job))
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)

    async def _release_later(self, job: Job) -> None:
        await asyncio.sleep(self.retry_delay)
        async with self._not_empty:
            self._ready[job.queue].append(job.id)
            self._not_empty.notify_all()

    # ── 参照 (オペレーター向け) ──────────────────

    async def get_job(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    async def list_failed(self, queue_name: str) -> list[Job]:
        return [self._jobs[job_id] for job_id in self._failed[queue_name]]

    def size(self, queue_name: str) -> int:
        """配送待ちのジョブ数"""
        return len(self._ready[queue_name])

    async def close(self) -> None:
        for task in list(self._timers):
            task.cancel()
