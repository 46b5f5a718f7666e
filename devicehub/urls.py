"""
URL configuration for devicehub project.

The API is built from the process runtime; ``devicehub.asgi`` drives the
same runtime's startup and shutdown.
"""

from django.urls import path

from apps.api import build_api
from apps.runtime import build_runtime

runtime = build_runtime()
api = build_api(runtime)

urlpatterns = [
    path("", api.urls),
]
