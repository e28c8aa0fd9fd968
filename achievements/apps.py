from django.apps import AppConfig


class AchievementsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'achievements'
    verbose_name = 'Handshake Points & Trust'

    def ready(self):
        import achievements.signals  # noqa: F401
