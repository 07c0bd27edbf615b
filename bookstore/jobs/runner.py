"""
Jobs — ワーカープロセスのエントリーポイント

    python -m bookstore.jobs.runner

Redis のジョブキューを購読し、SIGINT / SIGTERM を受けたら
処理中のジョブを終わらせてから停止する。
起動時に processing に取り残されたジョブ (前回のプロセスが処理中に落ちたもの) を
ready に戻す。このキューを処理するワーカープロセスは 1 つだけ動かす前提。
"""

import asyncio
import logging
import signal

import redis.asyncio as aioredis

from ..config import Settings
from ..errors import JobPermanentFailure
from .handlers import JobHandlers, LoggingMailer, RedisDeliveryLog, RedisNotificationStore
from .payloads import NOTIFICATION_QUEUE, WRITE_NOTIFICATION
from .queue import Job, JobQueue, enqueue_best_effort
from .redis_queue import RedisJobQueue
from .worker import WorkerPool

logger = logging.getLogger(__name__)


def alert_admins(queue: JobQueue, settings: Settings):
    """リトライを使い切ったジョブを管理者向けのアプリ内通知にする"""

    async def on_permanent_failure(job: Job, failure: JobPermanentFailure) -> None:
        if job.kind == WRITE_NOTIFICATION:
            # 通知そのものの失敗は通知しない (ループ防止)
            return
        await enqueue_best_effort(
            queue,
            NOTIFICATION_QUEUE,
            WRITE_NOTIFICATION,
            {
                "user_id": "admin",
                "type": "job_failed",
                "message": failure.message,
                "related_id": job.id,
            },
            timeout=settings.enqueue_timeout,
        )

    return on_permanent_failure


async def run_worker(settings: Settings, shutdown_event: asyncio.Event) -> None:
    redis_conn = aioredis.from_url(settings.redis_url, decode_responses=True)
    queue = RedisJobQueue.from_settings(redis_conn, settings)
    pool = WorkerPool.from_settings(queue, settings, alert_admins(queue, settings))
    handlers = JobHandlers(
        mailer=LoggingMailer(),
        notifications=RedisNotificationStore(redis_conn, settings.redis_prefix),
        delivery_log=RedisDeliveryLog(redis_conn, settings.redis_prefix),
        admin_email=settings.admin_email,
    )
    handlers.register_all(pool)

    try:
        for queue_name in pool.queue_names:
            await queue.requeue_in_flight(queue_name)
        await pool.start()
        await shutdown_event.wait()
        logger.info("Shutdown requested, draining in-flight jobs")
        await pool.stop()
    finally:
        await redis_conn.aclose()


async def main() -> None:
    settings = Settings.from_env()
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)
    await run_worker(settings, shutdown_event)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(main())
