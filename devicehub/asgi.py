"""
ASGI config for devicehub project.

It exposes the ASGI callable as a module-level variable named ``application``.

For more information on this file, see
https://docs.djangoproject.com/en/5.2/howto/deployment/asgi/
"""

import logging
import os

from django.conf import settings
from django.contrib.staticfiles.handlers import ASGIStaticFilesHandler
from django.core.asgi import get_asgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "devicehub.settings")

django_asgi_app = get_asgi_application()

from devicehub.urls import runtime  # noqa: E402

logger = logging.getLogger(__name__)


class LifespanApplication:
    """
    ASGI 包装器：拦截 lifespan 事件，启动时预热策略注册表并启动协议适配器，
    退出时关闭适配器；其它 scope 原样交给 Django。
    """

    def __init__(self, app, runtime):
        self.app = app
        self.runtime = runtime
        self._started = False

    async def __call__(self, scope, receive, send):
        if scope["type"] == "lifespan":
            await self._handle_lifespan(receive, send)
            return
        await self.app(scope, receive, send)

    async def _handle_lifespan(self, receive, send):
        while True:
            message = await receive()

            if message["type"] == "lifespan.startup":
                if not self._started:
                    try:
                        await self.runtime.startup()
                        self._started = True
                    except Exception as exc:
                        logger.exception("Runtime startup failed.")
                        await send({"type": "lifespan.startup.failed", "message": str(exc)})
                        return
                await send({"type": "lifespan.startup.complete"})
                continue

            if message["type"] == "lifespan.shutdown":
                try:
                    if self._started:
                        await self.runtime.shutdown()
                except Exception as exc:
                    logger.exception("Runtime shutdown failed.")
                    await send({"type": "lifespan.shutdown.failed", "message": str(exc)})
                    return
                await send({"type": "lifespan.shutdown.complete"})
                return
            logger.warning("Unknown lifespan message: %s", message.get("type"))


if settings.DEBUG:
    application = ASGIStaticFilesHandler(django_asgi_app)
else:
    application = django_asgi_app

application = LifespanApplication(application, runtime)
