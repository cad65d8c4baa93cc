"""Celery worker configuration."""

from celery import Celery

from scene_engine.config import settings
from scene_engine.logging import setup_logging

# Setup logging before anything else
setup_logging()

# Create Celery app
celery_app = Celery(
    "scene_engine",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task execution
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=3600,  # stages can take many minutes
    task_soft_time_limit=3300,
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,
    # Result backend
    result_expires=86400,  # 24 hours
    # Task routing
    task_routes={
        "pipeline.scenario": {"queue": "high"},
        "pipeline.stage": {"queue": "high"},
        "pipeline.regenerate": {"queue": "high"},
        "pipeline.refresh_rate_limits": {"queue": "low"},
    },
    # Beat scheduler (for periodic tasks)
    beat_schedule={
        "refresh-rate-limits": {
            "task": "pipeline.refresh_rate_limits",
            "schedule": settings.rate_limit_config_cache_ttl,
            "options": {"queue": "low"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["scene_engine.jobs"])
