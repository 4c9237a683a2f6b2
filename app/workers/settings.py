"""Arq worker settings."""

from dataclasses import replace

from arq.connections import RedisSettings

from app.config import get_settings

settings = get_settings()

# Worker connection: arq's default connect retries
redis_settings = RedisSettings.from_dsn(settings.redis_url)

# API-side connection: fail fast so a down Redis falls back to direct execution
enqueue_redis_settings = replace(redis_settings, conn_retries=0, conn_timeout=2)
