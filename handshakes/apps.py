from django.apps import AppConfig


class HandshakesConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'handshakes'
    verbose_name = 'Proof of Handshake'
