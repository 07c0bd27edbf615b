"""
Bookstore — 設定 (Settings)

接続先 URL やリトライ回数などの設定を 1 つのオブジェクトにまとめ、
サービス・ジョブキュー・ワーカープールの生成時に明示的に渡す。
インポート時に環境変数を読むグローバル変数は持たない。
"""

import os

from pydantic import BaseModel, Field


class Settings(BaseModel):
    database_url: str = "sqlite+aiosqlite:///./bookstore.db"
    redis_url: str = "redis://localhost:6379"
    redis_prefix: str = "bookstore"

    # Job delivery
    job_max_attempts: int = Field(default=3, ge=1)
    job_retry_delay: float = Field(default=0.0, ge=0)
    worker_concurrency: int = Field(default=2, ge=1)
    worker_poll_interval: float = Field(default=0.5, gt=0)

    # Order placement
    enqueue_timeout: float = Field(default=2.0, gt=0)
    transaction_retries: int = Field(default=3, ge=0)

    admin_email: str = "admin@bookstore.local"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Settings":
        """環境変数から設定を組み立てる。未設定の項目はデフォルト値のまま。"""
        env = os.environ if environ is None else environ
        mapping = {
            "DATABASE_URL": "database_url",
            "REDIS_URL": "redis_url",
            "REDIS_PREFIX": "redis_prefix",
            "JOB_MAX_ATTEMPTS": "job_max_attempts",
            "JOB_RETRY_DELAY": "job_retry_delay",
            "WORKER_CONCURRENCY": "worker_concurrency",
            "WORKER_POLL_INTERVAL": "worker_poll_interval",
            "ENQUEUE_TIMEOUT": "enqueue_timeout",
            "TRANSACTION_RETRIES": "transaction_retries",
            "ADMIN_EMAIL": "admin_email",
        }
        values = {field: env[key] for key, field in mapping.items() if key in env}
        return cls.model_validate(values)
