from django.apps import AppConfig


class LinksConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "links"
    verbose_name = "Payment links"

    def ready(self):
        from . import config, signals  # noqa: F401
