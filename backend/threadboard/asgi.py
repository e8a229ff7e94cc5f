"""
ASGI config for threadboard project. Required for the live event streams.
"""
import os
from django.core.asgi import get_asgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'threadboard.settings')
application = get_asgi_application()
