"""Celery tasks for Tollgate background billing work.

**Design:**
- Celery broker and result backend are both Redis (same instance as the key
  cache and rate windows)
- Serialization is JSON
- reconcile_unbilled_usage runs every 5 minutes via Celery Beat and replays
  the unbilled_usage outbox; it is never triggered from the request path,
  so a slow store cannot delay responses

Run a worker with beat:
    celery -A tollgate.billing.tasks worker --beat --loglevel=info
"""

import asyncio

from celery import Celery

from tollgate.config import settings

# ---------------------------------------------------------------------------
# Celery application
# ---------------------------------------------------------------------------

celery_app = Celery("tollgate")

RECONCILE_TASK_NAME = "tollgate.reconcile_unbilled_usage"


def configure_celery(redis_url: str) -> None:
    """Configure Celery broker, result backend and the beat schedule.

    Called once at import so workers and beat share the same configuration.

    Args:
        redis_url: Redis connection URL (e.g. "redis://localhost:6379/0").
    """
    from celery.schedules import crontab  # noqa: PLC0415

    celery_app.conf.broker_url = redis_url
    celery_app.conf.result_backend = redis_url
    celery_app.conf.task_serializer = "json"
    celery_app.conf.accept_content = ["json"]

    celery_app.conf.beat_schedule = {
        "reconcile-unbilled-usage": {
            "task": RECONCILE_TASK_NAME,
            "schedule": crontab(minute="*/5"),  # every 5 minutes
        },
    }


configure_celery(settings.redis_url)


# ---------------------------------------------------------------------------
# Reconciliation task
# ---------------------------------------------------------------------------


@celery_app.task(name=RECONCILE_TASK_NAME)
def reconcile_unbilled_usage_task(limit: int = 100) -> dict:
    """Replay pending unbilled usage; scheduled by Celery Beat every 5 minutes.

    Celery workers are synchronous, so the async replay runs in a fresh
    event loop with its own engine and Redis connection.

    Returns:
        Dict with replayed, failed and skipped counts.
    """
    from tollgate.billing.pricing import DEFAULT_PRICING  # noqa: PLC0415
    from tollgate.billing.reconcile import run_reconciliation  # noqa: PLC0415

    return asyncio.run(run_reconciliation(settings, DEFAULT_PRICING, limit))
