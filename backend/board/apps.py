"""
Board App Configuration
"""
from django.apps import AppConfig, apps


class BoardConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'board'

    def ready(self):
        # Composition root for live updates: one broker per process, handed
        # to the services by the views and to the event streams.
        from .broker import EventBroker
        self.broker = EventBroker()


def get_broker():
    """The process's event broker."""
    return apps.get_app_config('board').broker
