"""Celery worker configuration.

Background work:
- Renewal charges for token-billed subscriptions
- Dunning retries for past-due subscriptions
- Termination of long-suspended subscriptions
- Webhook follow-ups (state machine and dunning)

Start workers with ``-Q billing,webhooks`` so both queues are consumed.
"""

from celery import Celery
from celery.schedules import crontab

from merchant_billing.config import settings

# Create Celery app
celery_app = Celery(
    "merchant_billing_tasks",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["merchant_billing.tasks"],
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=600,  # Sweeps call providers for many subscriptions
    task_soft_time_limit=540,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,

    # Result backend settings
    result_expires=3600,

    # Retry settings
    task_default_retry_delay=60,
    task_max_retries=3,

    # Webhook follow-ups must not queue behind long sweeps
    task_routes={
        "merchant_billing.tasks.process_webhook_outcome": {"queue": "webhooks"},
        "merchant_billing.tasks.run_*": {"queue": "billing"},
        "merchant_billing.tasks.handle_plan_price_changed": {"queue": "billing"},
    },

    # Beat schedule for periodic tasks
    beat_schedule={
        # Charge renewals hourly
        "run-renewal-sweep": {
            "task": "merchant_billing.tasks.run_renewal_sweep",
            "schedule": crontab(minute=0),
        },
        # Dunning every 6 hours
        "run-dunning-sweep": {
            "task": "merchant_billing.tasks.run_dunning_sweep",
            "schedule": crontab(minute=30, hour="*/6"),
        },
        # Terminate long-suspended subscriptions daily at 2 AM
        "run-suspension-sweep": {
            "task": "merchant_billing.tasks.run_suspension_sweep",
            "schedule": crontab(hour=2, minute=0),
        },
    },
)


if __name__ == "__main__":
    celery_app.start()
