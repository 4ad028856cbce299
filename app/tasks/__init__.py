"""
Celery tasks package.

Tasks are organized by domain:
- cleanup_tasks: Periodic removal of expired one-time codes and biometric challenges
"""

from app.tasks import cleanup_tasks

__all__ = ["cleanup_tasks"]
