"""Celery beat schedule configuration.

Keeping the structure close to the Celery docs makes copying snippets
straightforward for new periodic jobs.
"""
from __future__ import annotations

from core.config import settings

CELERY_BEAT_SCHEDULE = {
    # Orphan events that exhausted their inline retries
    "payments-replay-dead-letters": {
        "task": "payments.replay_dead_letters",
        "schedule": float(settings.celery.dead_letter_replay_interval_seconds),
        "options": {"queue": "low"},
    },
}
