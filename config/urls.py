"""config URL Configuration

The `urlpatterns` list routes URLs to views. For more information please see:
    https://docs.djangoproject.com/en/5.2/topics/http/urls/
"""
import json
import logging

from django.conf import settings
from django.contrib import admin
from django.urls import path
from django.views.decorators.csrf import csrf_exempt
from django.views.generic.base import RedirectView
from graphene_django.views import GraphQLView

# Customize admin site
admin.site.site_header = "Convenu Admin"
admin.site.site_title = "Convenu Admin Portal"
admin.site.index_title = "Welcome to Convenu Administration"

logger = logging.getLogger(__name__)

HANDSHAKE_OPERATIONS = (
    'initiateHandshake',
    'claimHandshake',
    'confirmHandshakePayment',
    'mintHandshake',
    'refreshHandshakePayment',
)


class LoggingGraphQLView(GraphQLView):
    def dispatch(self, request, *args, **kwargs):
        if request.method == 'POST':
            try:
                body = json.loads(request.body)
                query = body.get('query', '')
                logger.debug("GraphQL Query: %s", query)

                # Handshake mutations are logged without variables; signed transactions are bulky
                for operation in HANDSHAKE_OPERATIONS:
                    if operation in query:
                        logger.info(f"HANDSHAKE MUTATION DETECTED - Operation: {operation}, User: {request.user}")
            except Exception as e:
                logger.error("Error parsing GraphQL request: %s", str(e))
        return super().dispatch(request, *args, **kwargs)


urlpatterns = [
    # Ensure /admin (no trailing slash) redirects to /admin/
    path('admin', RedirectView.as_view(url='/admin/', permanent=True)),
    path('admin/', admin.site.urls),
    path('graphql/', csrf_exempt(LoggingGraphQLView.as_view(graphiql=settings.DEBUG))),
]
