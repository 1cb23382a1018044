from django.apps import AppConfig


class RxOrdersConfig(AppConfig):
    name = 'rxorders'
    default_auto_field = 'django.db.models.BigAutoField'

    def ready(self):
        # 注册 order_status_changed 的 receiver
        from . import signals  # noqa: F401
