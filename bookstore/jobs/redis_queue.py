"""
Jobs — Redis 版ジョブキュー

Pub/Sub はサービスが落ちている間のメッセージを失うので、ここでは
リストとハッシュでジョブを永続化する。Redis が生きている限り、
プロデューサやワーカーが再起動してもジョブは残る。

キー構成 (prefix = settings.redis_prefix):
    {prefix}:job:{id}                 ジョブ本体 (hash)
    {prefix}:queue:{name}:ready       配送待ち (list, 左から入れて右から取る = FIFO)
    {prefix}:queue:{name}:processing  ワーカーが処理中 (list)
    {prefix}:queue:{name}:delayed     リトライ待ち (sorted set, score = 再配送時刻)
    {prefix}:queue:{name}:failed      リトライを使い切ったジョブ (list)

ready → processing の移動は LMOVE 1 コマンドなので、
同じジョブを 2 つのワーカーが同時に受け取ることはない。
Redis クライアントは decode_responses=True で作ること。
"""

import asyncio
import json
import logging
import time
from datetime import datetime

import redis.asyncio as aioredis

from ..config import Settings
from ..errors import InvalidJobPayload, JobPermanentFailure
from .payloads import dump_payload, parse_payload
from .queue import Job, JobStatus

logger = logging.getLogger(__name__)


class RedisJobQueue:
    def __init__(
        self,
        redis: aioredis.Redis,
        prefix: str = "bookstore",
        max_attempts: int = 3,
        retry_delay: float = 0.0,
        poll_interval: float = 0.1,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.redis = redis
        self.prefix = prefix
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.poll_interval = poll_interval

    @classmethod
    def from_settings(cls, redis: aioredis.Redis, settings: Settings) -> "RedisJobQueue":
        return cls(
            redis,
            prefix=settings.redis_prefix,
            max_attempts=settings.job_max_attempts,
            retry_delay=settings.job_retry_delay,
        )

    # ── キー ─────────────────────────────────────

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def _queue_key(self, queue_name: str, part: str) -> str:
        return f"{self.prefix}:queue:{queue_name}:{part}"

    # ── シリアライズ ─────────────────────────────

    @staticmethod
    def _to_hash(job: Job) -> dict:
        return {
            "id": job.id,
            "queue": job.queue,
            "kind": job.kind,
            "payload": json.dumps(dump_payload(job.payload)),
            "enqueued_at": job.enqueued_at.isoformat(),
            "attempts": job.attempts,
            "status": job.status,
            "last_error": job.last_error or "",
        }

    @staticmethod
    def _from_hash(data: dict) -> Job:
        return Job(
            id=data["id"],
            queue=data["queue"],
            kind=data["kind"],
            payload=parse_payload(data["kind"], json.loads(data["payload"])),
            enqueued_at=datetime.fromisoformat(data["enqueued_at"]),
            attempts=int(data["attempts"]),
            status=data["status"],
            last_error=data.get("last_error") or None,
        )

    # ── 投入 / 取得 ──────────────────────────────

    async def enqueue(self, queue_name: str, kind: str, payload) -> Job:
        job = Job.new(queue_name, kind, payload)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job.id), mapping=self._to_hash(job))
            pipe.lpush(self._queue_key(queue_name, "ready"), job.id)
            await pipe.execute()
        return job

    async def dequeue(self, queue_name: str, timeout: float | None = None) -> Job | None:
        """
        ready から processing へ 1 件移して返す。

        空なら poll_interval ごとに見に行く。timeout=None なら無期限に待つ。
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        ready = self._queue_key(queue_name, "ready")
        processing = self._queue_key(queue_name, "processing")
        while True:
            await self._promote_delayed(queue_name)
            job_id = await self.redis.lmove(ready, processing, "RIGHT", "LEFT")
            if job_id is not None:
                job = await self._claim(queue_name, job_id)
                if job is not None:
                    return job
                continue
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                await asyncio.sleep(min(self.poll_interval, remaining))
            else:
                await asyncio.sleep(self.poll_interval)

    async def _claim(self, queue_name: str, job_id: str) -> Job | None:
        key = self._job_key(job_id)
        if not await self.redis.exists(key):
            # 本体が消えている (手動削除など)。リストからも外す
            logger.warning("Dropping dangling job id %s from %s", job_id, queue_name)
            await self.redis.lrem(self._queue_key(queue_name, "processing"), 1, job_id)
            return None
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hincrby(key, "attempts", 1)
            pipe.hset(key, "status", "active")
            pipe.hgetall(key)
            _, _, data = await pipe.execute()
        try:
            return self._from_hash(data)
        except InvalidJobPayload as e:
            # 保存済みのペイロードが読めないジョブは何度配送しても同じなので failed にする
            await self._fail_unreadable(queue_name, job_id, data, str(e))
            return None

    async def _fail_unreadable(self, queue_name: str, job_id: str, data: dict, reason: str) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._queue_key(queue_name, "processing"), 1, job_id)
            pipe.hset(self._job_key(job_id), mapping={"status": "failed", "last_error": reason})
            pipe.rpush(self._queue_key(queue_name, "failed"), job_id)
            await pipe.execute()
        logger.error(
            "%s",
            JobPermanentFailure(job_id, data.get("kind", "?"), int(data.get("attempts", 0)), reason),
        )

    async def _promote_delayed(self, queue_name: str) -> None:
        delayed = self._queue_key(queue_name, "delayed")
        due = await self.redis.zrangebyscore(delayed, 0, time.time())
        for job_id in due:
            # ZREM に成功したワーカーだけが ready に戻す
            if await self.redis.zrem(delayed, job_id):
                await self.redis.lpush(self._queue_key(queue_name, "ready"), job_id)

    # ── 結果の報告 ───────────────────────────────

    async def _current_status(self, job: Job) -> str | None:
        return await self.redis.hget(self._job_key(job.id), "status")

    async def ack(self, job: Job) -> None:
        status = await self._current_status(job)
        if status != "active":
            logger.warning("Ignoring ack for job %s in status %s", job.id, status)
            return
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._queue_key(job.queue, "processing"), 1, job.id)
            pipe.hset(self._job_key(job.id), mapping={"status": "completed", "last_error": ""})
            await pipe.execute()
        job.status = "completed"
        job.last_error = None

    async def nack(self, job: Job, retryable: bool = True, error: str | None = None) -> JobStatus:
        status = await self._current_status(job)
        if status != "active":
            logger.warning("Ignoring nack for job %s in status %s", job.id, status)
            return status
        key = self._job_key(job.id)
        job.last_error = error
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._queue_key(job.queue, "processing"), 1, job.id)
            if retryable and job.attempts < self.max_attempts:
                job.status = "pending"
                pipe.hset(key, mapping={"status": "pending", "last_error": error or ""})
                if self.retry_delay > 0:
                    pipe.zadd(
                        self._queue_key(job.queue, "delayed"),
                        {job.id: time.time() + self.retry_delay},
                    )
                else:
                    pipe.lpush(self._queue_key(job.queue, "ready"), job.id)
            else:
                job.status = "failed"
                pipe.hset(key, mapping={"status": "failed", "last_error": error or ""})
                pipe.rpush(self._queue_key(job.queue, "failed"), job.id)
            await pipe.execute()

        if job.status == "failed":
            logger.error(
                "%s", JobPermanentFailure(job.id, job.kind, job.attempts, error or "unknown")
            )
        else:
            logger.info(
                "Job %s (%s) will be retried (attempt %d/%d)",
                job.id, job.kind, job.attempts, self.max_attempts,
            )
        return job.status

    # ── 参照 / 復旧 (オペレーター向け) ───────────

    async def get_job(self, job_id: str) -> Job | None:
        data = await self.redis.hgetall(self._job_key(job_id))
        return self._from_hash(data) if data else None

    async def list_failed(self, queue_name: str) -> list[Job]:
        ids = await self.redis.lrange(self._queue_key(queue_name, "failed"), 0, -1)
        jobs = []
        for job_id in ids:
            try:
                job = await self.get_job(job_id)
            except InvalidJobPayload:
                logger.error("Failed job %s on %s has an unreadable payload", job_id, queue_name)
                continue
            if job is not None:
                jobs.append(job)
        return jobs

    async def size(self, queue_name: str) -> int:
        return await self.redis.llen(self._queue_key(queue_name, "ready"))

    async def requeue_in_flight(self, queue_name: str) -> int:
        """
        processing に残ったジョブを ready に戻す。

        ワーカーが処理中に落ちたジョブの救済用。
        このキューを処理しているワーカーが 1 つも動いていないときだけ呼ぶこと。
        """
        processing = self._queue_key(queue_name, "processing")
        ready = self._queue_key(queue_name, "ready")
        moved = 0
        while True:
            job_id = await self.redis.lmove(processing, ready, "LEFT", "RIGHT")
            if job_id is None:
                break
            await self.redis.hset(self._job_key(job_id), "status", "pending")
            moved += 1
        if moved:
            logger.warning("Requeued %d in-flight job(s) on %s", moved, queue_name)
        return moved
