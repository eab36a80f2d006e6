"""
WSGI config for the escrow payment service.

Provided for traditional deployments (gunicorn); Uvicorn uses config.asgi.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

application = get_wsgi_application()
