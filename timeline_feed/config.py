"""
Configuration management using Pydantic BaseSettings.
All values can be overridden via environment variables or a .env file.
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── TiDB (MySQL-protocol compatible), authoritative store ─────────────
    tidb_host: str = "tidb"
    tidb_port: int = 4000
    tidb_user: str = "root"
    tidb_password: str = ""
    tidb_database: str = "social_feed"

    @property
    def tidb_url(self) -> str:
        return (
            f"mysql+aiomysql://{self.tidb_user}:{self.tidb_password}"
            f"@{self.tidb_host}:{self.tidb_port}/{self.tidb_database}"
        )

    # ── Redis ──────────────────────────────────────────────────────────────
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_db: int = 0

    # ── Kafka ──────────────────────────────────────────────────────────────
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_topic_content_created: str = "content.created"
    kafka_topic_content_deleted: str = "content.deleted"
    kafka_consumer_group: str = "feed-fanout"

    # ── Timelines ──────────────────────────────────────────────────────────
    timeline_max_entries: int = 2000     # hard cap per timeline ZSET
    tombstone_ttl_seconds: int = 86400   # how long a delete blocks a late create

    # ── Fan-out ────────────────────────────────────────────────────────────
    fanout_batch_size: int = 500         # follower keys per pipeline
    fanout_max_concurrency: int = 4      # pipelines in flight per event

    # ── Feed assembly ──────────────────────────────────────────────────────
    feed_cache_ttl_seconds: int = 10
    feed_default_limit: int = 10
    feed_max_limit: int = 50
    feed_cursor_skew_ms: int = 60_000    # first page cursor = now + skew

    # ── Rate limiting ──────────────────────────────────────────────────────
    rate_limit_window_ms: int = 60_000
    rate_limit_max_requests: int = 300
    rate_limit_write_window_ms: int = 15 * 60 * 1000
    rate_limit_write_max_requests: int = 50

    # ── Observability ──────────────────────────────────────────────────────
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
    service_name: str = "timeline-feed"
    environment: str = "development"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
