"""
Django settings for devicehub project.

Every deployment-specific value is read from the environment.
"""

import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "devicehub-insecure-dev-key")
DEBUG = _env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = [host for host in os.environ.get("DJANGO_ALLOWED_HOSTS", "*").split(",") if host]

INSTALLED_APPS = [
    "django.contrib.staticfiles",
    "ninja",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "devicehub.urls"
ASGI_APPLICATION = "devicehub.asgi.application"

# 无持久化数据：设备令牌与升级记录使用内存仓储
DATABASES = {}

PASSWORD_HASHERS = [
    "django.contrib.auth.hashers.PBKDF2PasswordHasher",
]

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = False
USE_TZ = True

STATIC_URL = "static/"

# 运维接口 JWT
JWT_SECRET = os.environ.get("JWT_SECRET", SECRET_KEY)
# 设备 MQTT 密码签名
DEVICE_CREDENTIAL_SECRET = os.environ.get("DEVICE_CREDENTIAL_SECRET", SECRET_KEY)

MQTT_BROKER_URL = os.environ.get("MQTT_BROKER_URL", "mqtt://localhost:1883")
POLICY_CONFIG_PATH = os.environ.get("POLICY_CONFIG_PATH") or None
POLICY_WARMUP_TENANTS = tuple(
    tenant for tenant in os.environ.get("POLICY_WARMUP_TENANTS", "default").split(",") if tenant
)

BOOTSTRAP = {
    "broker_urls": [url for url in os.environ.get("BOOTSTRAP_BROKER_URLS", MQTT_BROKER_URL).split(",") if url],
    "keepalive_seconds": _env_int("BOOTSTRAP_KEEPALIVE_SECONDS", 60),
    "session_expiry_hours": _env_int("BOOTSTRAP_SESSION_EXPIRY_HOURS", 168),
    "password_expiry_hours": _env_int("BOOTSTRAP_PASSWORD_EXPIRY_HOURS", 24),
    "config_expiry_hours": _env_int("BOOTSTRAP_CONFIG_EXPIRY_HOURS", 24),
    "tls_enabled": _env_bool("BOOTSTRAP_TLS_ENABLED", False),
    "default_tenant": os.environ.get("BOOTSTRAP_DEFAULT_TENANT") or None,
    "websocket_url": os.environ.get("BOOTSTRAP_WEBSOCKET_URL") or None,
}

PROTOCOLS = {
    "mqtt": {
        "enabled": _env_bool("PROTOCOL_MQTT_ENABLED", False),
        "broker_url": MQTT_BROKER_URL,
        "client_id": os.environ.get("PROTOCOL_MQTT_CLIENT_ID", "devicehub-core"),
        "retry": {"base_delay": 1.0, "max_delay": 60.0, "max_attempts": 0},
    },
    "http": {
        "enabled": _env_bool("PROTOCOL_HTTP_ENABLED", True),
        "subscriptions": ["iot/#"],
    },
    "websocket": {
        "enabled": _env_bool("PROTOCOL_WEBSOCKET_ENABLED", False),
        "host": os.environ.get("PROTOCOL_WEBSOCKET_HOST", "0.0.0.0"),
        "port": _env_int("PROTOCOL_WEBSOCKET_PORT", 8765),
        "path": "/ws",
    },
    "udp": {
        "enabled": _env_bool("PROTOCOL_UDP_ENABLED", False),
        "host": os.environ.get("PROTOCOL_UDP_HOST", "0.0.0.0"),
        "port": _env_int("PROTOCOL_UDP_PORT", 5684),
    },
    "coap": {
        "enabled": _env_bool("PROTOCOL_COAP_ENABLED", False),
        "host": os.environ.get("PROTOCOL_COAP_HOST", "0.0.0.0"),
        "port": _env_int("PROTOCOL_COAP_PORT", 5683),
    },
}

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": LOG_LEVEL,
    },
    "loggers": {
        "django": {"handlers": ["console"], "level": "WARNING", "propagate": False},
        # aiocoap is chatty at INFO
        "coap": {"level": "WARNING"},
        "coap-server": {"level": "WARNING"},
    },
}
