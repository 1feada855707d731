# config/settings.py

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "lams-dev-secret-key-change-me")
DEBUG = os.getenv("DJANGO_DEBUG", "1") == "1"
ALLOWED_HOSTS = [h.strip() for h in os.getenv("DJANGO_ALLOWED_HOSTS", "*").split(",") if h.strip()]

INSTALLED_APPS = [
    "apps.api",
]

MIDDLEWARE = [
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
]

ROOT_URLCONF = "config.urls"

DATABASES = {}

USE_TZ = True
TIME_ZONE = "Asia/Kolkata"

# -------------------------
# LAMS workflow core
# -------------------------
LAMS_STORE_BACKEND = os.getenv("LAMS_STORE_BACKEND", "json")
LAMS_DB_PATH = os.getenv("LAMS_DB_PATH") or None
LAMS_DOCUMENTS_DIR = os.getenv("LAMS_DOCUMENTS_DIR") or os.path.join(str(BASE_DIR), "documents")
LAMS_PUBLIC_BASE_URL = os.getenv("LAMS_PUBLIC_BASE_URL", "https://bhuarjan.com/bhuarjan")
LAMS_OBJECTION_WINDOW_DAYS = int(os.getenv("LAMS_OBJECTION_WINDOW_DAYS", "30"))
LAMS_REF_PADDING = int(os.getenv("LAMS_REF_PADDING", "3"))
LAMS_LOG_LEVEL = os.getenv("LAMS_LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "simple"},
    },
    "loggers": {
        "apps": {"handlers": ["console"], "level": LAMS_LOG_LEVEL, "propagate": False},
    },
}
