"""
ASGI entrypoint. Configures Django and exposes the HTTP application
(GraphQL is served over plain HTTP at /graphql/).
"""

import os

from django.core.asgi import get_asgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

application = get_asgi_application()
