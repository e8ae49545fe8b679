from __future__ import annotations

import asyncio
import logging

from xfactor.config import settings
from xfactor.logging_config import setup_logging
from xfactor.scheduler import start_scheduler
from xfactor.storage import InMemoryKeyValueStore, KeyValueStore
from xfactor.storage_redis import RedisKeyValueStore
from xfactor.system import GrowthSystem
from xfactor.web import start_app


def _build_store() -> KeyValueStore:
    if settings.REDIS_URL:
        return RedisKeyValueStore(settings.REDIS_URL)
    return InMemoryKeyValueStore()


async def _wait_forever() -> None:
    event = asyncio.Event()
    await event.wait()


async def main() -> None:
    setup_logging(settings.LOG_DIR, settings.LOG_LEVEL)
    log = logging.getLogger("startup")

    store = _build_store()
    system = GrowthSystem.build(store=store)
    log.info(
        "growth system ready: agents=%s loops=%s store=%s",
        system.agents.list_agents(),
        system.registry.stats()["loop_ids"],
        type(store).__name__,
    )

    scheduler = start_scheduler(system.analytics, settings.REPORT_COHORTS)
    runner = await start_app(system, settings.WEB_HOST, settings.WEB_PORT)
    try:
        await _wait_forever()
    finally:
        scheduler.shutdown(wait=False)
        await runner.cleanup()
        await system.close()
        if isinstance(store, RedisKeyValueStore):
            await store.close()
        log.info("growth system stopped")
