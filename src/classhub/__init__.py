"""Classhub: realtime chat, presence and account provisioning."""

from .api import app
from .worker import celery_app

__all__ = ["app", "celery_app"]
