from __future__ import annotations

from celery import Celery

from receipt_engine.core.config import settings


def make_celery() -> Celery:
    app = Celery(
        "receipt_engine",
        broker=settings.redis_url,
        backend=settings.redis_url,
        include=["receipt_engine.worker.tasks"],
    )
    app.conf.update(
        task_always_eager=settings.app_env in ("dev", "test"),
        task_eager_propagates=True,
        task_track_started=True,
        # A batch goes back to the broker if its worker dies before finishing it
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
    )
    return app


celery_app = make_celery()
