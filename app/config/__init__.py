# =============================================================================
# Django Project Configuration Package
# =============================================================================
# Settings, URLs, ASGI/WSGI applications, and Celery configuration.
#
# Import the Celery app so tasks are registered when Django starts.
# =============================================================================

from config.celery import app as celery_app

__all__ = ("celery_app",)
