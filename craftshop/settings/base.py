from dotenv import load_dotenv
load_dotenv()

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent.parent


def _env_bool(name, default="false"):
    return os.getenv(name, default).lower() in ("1", "true", "yes")


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-change-me")
DEBUG = _env_bool("DJANGO_DEBUG")
ALLOWED_HOSTS = [h.strip() for h in os.getenv("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",") if h.strip()]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "orders",
    "payments",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "craftshop.urls"
WSGI_APPLICATION = "craftshop.wsgi.application"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

DATABASES = {
    "default": {
        "ENGINE": os.getenv("DB_ENGINE", "django.db.backends.sqlite3"),
        "NAME": os.getenv("DB_NAME", str(BASE_DIR / "db.sqlite3")),
        "USER": os.getenv("DB_USER", ""),
        "PASSWORD": os.getenv("DB_PASSWORD", ""),
        "HOST": os.getenv("DB_HOST", ""),
        "PORT": os.getenv("DB_PORT", ""),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = "Asia/Kolkata"
USE_I18N = True
USE_TZ = True
STATIC_URL = "/static/"

# Storefront (SPA) origin used for success/failure redirects
STOREFRONT_URL = os.getenv("STOREFRONT_URL", "http://localhost:5173").rstrip("/")

# PhonePe gateway. ENV=sandbox never contacts the gateway.
PHONEPE = {
    "ENV": os.getenv("PHONEPE_ENV", "sandbox"),
    "MERCHANT_ID": os.getenv("PHONEPE_MERCHANT_ID", ""),
    "SALT_KEY": os.getenv("PHONEPE_SECRET", ""),
    "SALT_INDEX": os.getenv("PHONEPE_SALT_INDEX", "1"),
    "CLIENT_ID": os.getenv("PHONEPE_CLIENT_ID", ""),
    "CLIENT_SECRET": os.getenv("PHONEPE_CLIENT_SECRET", ""),
    "CLIENT_VERSION": os.getenv("PHONEPE_CLIENT_VERSION", "1"),
    "BASE_URL": os.getenv("PHONEPE_BASE_URL", ""),
    "LEGACY_BASE_URL": os.getenv("PHONEPE_LEGACY_BASE_URL", ""),
    "AUTH_URL": os.getenv("PHONEPE_AUTH_URL", ""),
    "STATUS_PATH": os.getenv("PHONEPE_STATUS_PATH", "/checkout/v2/order/{merchant_order_id}/status"),
    "LEGACY_STATUS_PATH": os.getenv("PHONEPE_LEGACY_STATUS_PATH", "/pg/v1/status/{merchant_id}/{transaction_id}"),
    "CALLBACK_URL": os.getenv("PHONEPE_CALLBACK_URL", ""),
    "TIMEOUT": float(os.getenv("PHONEPE_TIMEOUT", "15")),
    "TOKEN_SAFETY_MARGIN": float(os.getenv("PHONEPE_TOKEN_SAFETY_MARGIN", "30")),
    "VERIFY_MAX_ATTEMPTS": int(os.getenv("PHONEPE_VERIFY_MAX_ATTEMPTS", "6")),
    "VERIFY_BASE_DELAY": float(os.getenv("PHONEPE_VERIFY_BASE_DELAY", "1")),
    "VERIFY_MAX_DELAY": float(os.getenv("PHONEPE_VERIFY_MAX_DELAY", "8")),
    "VERIFY_MAX_ELAPSED": float(os.getenv("PHONEPE_VERIFY_MAX_ELAPSED", "45")),
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "verbose"},
    },
    "root": {"handlers": ["console"], "level": "WARNING"},
    "loggers": {
        "payments": {"handlers": ["console"], "level": os.getenv("PAYMENTS_LOG_LEVEL", "INFO"), "propagate": False},
        "orders": {"handlers": ["console"], "level": "INFO", "propagate": False},
    },
}
