"""Dispatches settlement events to Celery tasks by name."""
from __future__ import annotations

import asyncio
import dataclasses
from datetime import datetime
from typing import Any, Dict, Sequence

from core.logging_config import get_logger
from domain.payment.events import SettlementEvent
from ..config.celery import celery_app


logger = get_logger(__name__)

# 领域事件 → 通知任务
EVENT_TASKS: Dict[str, str] = {
    "TransactionSucceeded": "notifications.send_purchase_receipt",
    "TransactionRefunded": "notifications.send_refund_confirmation",
    "EarningOpened": "notifications.notify_creator_sale",
    "DisputeOpened": "notifications.notify_dispute_opened",
    "DisputeResolved": "notifications.notify_dispute_resolved",
}


def event_to_kwargs(event: SettlementEvent) -> Dict[str, Any]:
    """JSON-safe task kwargs for a dataclass event."""
    data = dataclasses.asdict(event)
    return {k: v.isoformat() if isinstance(v, datetime) else v for k, v in data.items()}


class TaskDispatcher:
    """Notifier implementation: hands events to the worker queue.

    Sending happens in a thread because broker publishing is blocking.
    """

    def __init__(self, app=celery_app) -> None:
        self.app = app

    async def publish(self, events: Sequence[SettlementEvent]) -> None:
        for event in events:
            task_name = EVENT_TASKS.get(event.name)
            if task_name is None:
                continue
            await asyncio.to_thread(self.enqueue, task_name, kwargs=event_to_kwargs(event))
            logger.info(
                "settlement_event_dispatched",
                event=event.name,
                task=task_name,
                transaction_id=event.transaction_id,
            )

    def enqueue(self, task_name: str, *, args: tuple | None = None, kwargs: Dict[str, Any] | None = None) -> None:
        """Generic escape hatch for scheduling arbitrary tasks by name."""
        task = self.app.tasks.get(task_name)
        if task is not None:
            # 本进程已注册的任务走 apply_async，可遵循 task_always_eager
            task.apply_async(args=args or (), kwargs=kwargs or {})
            return
        self.app.send_task(task_name, args=args or (), kwargs=kwargs or {})
