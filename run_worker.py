#!/usr/bin/env python
"""Run the Arq worker with proper event loop handling for Python 3.12+."""

import asyncio
import logging

from arq.worker import Worker

from app.config import get_settings
from app.workers.tasks import WorkerSettings

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


async def main():
    """Run the worker."""
    worker = Worker(
        functions=WorkerSettings.functions,
        on_startup=WorkerSettings.on_startup,
        on_shutdown=WorkerSettings.on_shutdown,
        redis_settings=WorkerSettings.redis_settings,
        max_jobs=WorkerSettings.max_jobs,
        job_timeout=WorkerSettings.job_timeout,
        keep_result=WorkerSettings.keep_result,
        max_tries=WorkerSettings.max_tries,
    )
    await worker.main()


if __name__ == "__main__":
    asyncio.run(main())
