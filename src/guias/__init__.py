"""Guías backend: users, guía documents and reference catalogs."""

from .api import app
from .worker import celery_app

__all__ = ["app", "celery_app"]
