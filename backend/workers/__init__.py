"""
Celery workers for background task processing.

This module provides:
- celery_app: The main Celery application instance
- tasks: staging job processing, compliance checks and recovery sweeps
"""
from workers.celery_app import celery_app

__all__ = ["celery_app"]
