"""
Celery tasks for settlement compensation: dead-letter replay.
"""
from __future__ import annotations

import asyncio
import functools

from celery import shared_task

from application.services.settlement_service import SettlementEventProcessor
from core.logging_config import get_logger
from core.settings import payment_settings
from infrastructure.database import build_engine, build_session_factory
from infrastructure.locks import build_keyed_lock
from infrastructure.tasks.utils.base_task import BaseTask
from infrastructure.tasks.utils.dispatcher import TaskDispatcher
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


logger = get_logger(__name__)


async def _replay(limit: int | None) -> dict:
    # 每次运行使用独立引擎：asyncio.run 会创建新的事件循环
    engine = build_engine()
    locks = build_keyed_lock()
    try:
        processor = SettlementEventProcessor(
            functools.partial(SQLAlchemyUnitOfWork, build_session_factory(engine)),
            locks,
            ledger_settings=payment_settings.ledger,
            notifier=TaskDispatcher(),
        )
        return await processor.replay_dead_letters(limit)
    finally:
        close = getattr(locks, "aclose", None)
        if callable(close):
            await close()
        await engine.dispose()


@shared_task(name="payments.replay_dead_letters", bind=True, base=BaseTask, max_retries=3, default_retry_delay=60)
def replay_dead_letters(self, limit: int | None = None) -> dict:
    stats = asyncio.run(_replay(limit))
    logger.info("dead_letter_replay_completed", **stats)
    return stats
