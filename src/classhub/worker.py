"""Celery application running bulk account imports off the request path."""

from celery import Celery

from .config import settings


celery_app = Celery(
    "classhub",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["classhub.tasks"],
)
celery_app.conf.timezone = "UTC"
