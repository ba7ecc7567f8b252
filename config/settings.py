import os
from dotenv import load_dotenv
from urllib.parse import urlparse
from pathlib import Path
from datetime import timedelta

BASE_DIR = Path(__file__).resolve().parent.parent

# Load environment variables from .env.
# override=True keeps .env as the single source of truth for app config.
load_dotenv(BASE_DIR / ".env", override=True)


def env_bool(name, default=False):
    val = os.environ.get(name)
    if val is None:
        return default
    return str(val).strip().lower() in ("1", "true", "yes", "on")


def env_int(name, default):
    val = os.environ.get(name, "")
    return int(val) if val.strip().isdigit() else default


def env_list(name, default=""):
    return [v.strip() for v in os.environ.get(name, default).split(",") if v.strip()]


SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")
DEBUG = env_bool("DEBUG", True)
ALLOWED_HOSTS = env_list("ALLOWED_HOSTS", "*")
CSRF_TRUSTED_ORIGINS = env_list("CSRF_TRUSTED_ORIGINS")

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    # third-party
    "django_rq",
    "anymail",
    "rest_framework",
    "axes",
    # local apps
    "accounts.apps.AccountsConfig",
    "backend_api.apps.BackendApiConfig",
    "students.apps.StudentsConfig",
    "fees.apps.FeesConfig",
    "results.apps.ResultsConfig",
    "jobs.apps.JobsConfig",
]

AUTH_USER_MODEL = "accounts.User"

AUTHENTICATION_BACKENDS = (
    "axes.backends.AxesStandaloneBackend",
    "accounts.backends.BackendApiAuthBackend",
    # local superusers for /admin/
    "django.contrib.auth.backends.ModelBackend",
)

LOGIN_URL = "accounts:login"
LOGIN_REDIRECT_URL = "/"
LOGOUT_REDIRECT_URL = "accounts:login"

PASSWORD_HASHERS = [
    "django.contrib.auth.hashers.Argon2PasswordHasher",
]

# only local admin accounts have passwords here
_PV = "django.contrib.auth.password_validation."
AUTH_PASSWORD_VALIDATORS = [
    {"NAME": _PV + "UserAttributeSimilarityValidator"},
    {"NAME": _PV + "MinimumLengthValidator", "OPTIONS": {"min_length": 10}},
    {"NAME": _PV + "CommonPasswordValidator"},
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "axes.middleware.AxesMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
    # backend token per session; logs out on backend 401
    "accounts.middleware.ApiSessionMiddleware",
]

ROOT_URLCONF = "config.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [str(BASE_DIR / "templates")],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    }
]

WSGI_APPLICATION = "config.wsgi.application"

if os.environ.get("DB_NAME"):
    _db = {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": os.environ["DB_NAME"],
        "USER": os.environ.get("DB_USER", ""),
        "PASSWORD": os.environ.get("DB_PASSWORD", ""),
        "HOST": os.environ.get("DB_HOST", "localhost"),
        "PORT": os.environ.get("DB_PORT", "5432"),
    }
    if os.environ.get("DB_SSLMODE"):
        _db["OPTIONS"] = {"sslmode": os.environ["DB_SSLMODE"]}
else:
    _db = {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": str(BASE_DIR / "db.sqlite3"),
    }
DATABASES = {"default": _db}

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "fees-portal-cache",
    }
}

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.environ.get("TIME_ZONE", "Africa/Lagos")
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "static_build"
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

SESSION_COOKIE_AGE = 60 * 60 * 8
SESSION_COOKIE_SAMESITE = "Lax"
if not DEBUG:
    SESSION_COOKIE_SECURE = True
    CSRF_COOKIE_SECURE = True

SECURE_SSL_REDIRECT = env_bool("SECURE_SSL_REDIRECT", False)
SECURE_HSTS_SECONDS = env_int("SECURE_HSTS_SECONDS", 0)
if env_bool("USE_X_FORWARDED_PROTO", False):
    SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")

_RQ_CONNECTION = {
    "HOST": os.environ.get("RQ_HOST", "localhost"),
    "PORT": env_int("RQ_PORT", 6379),
    "DB": 0,
    "DEFAULT_TIMEOUT": 600,
}
# "mail" carries admin notifications for unrecorded payments
RQ_QUEUES = {name: dict(_RQ_CONNECTION) for name in ("default", "mail")}

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_RENDERER_CLASSES": [
        "rest_framework.renderers.JSONRenderer",
    ],
}

# Email backend (Anymail if configured; fallback to console for dev)
SENDGRID_API_KEY = os.environ.get("SENDGRID_API_KEY")
if SENDGRID_API_KEY:
    ANYMAIL = {"SENDGRID_API_KEY": SENDGRID_API_KEY}
    EMAIL_BACKEND = "anymail.backends.sendgrid.EmailBackend"
else:
    EMAIL_BACKEND = "django.core.mail.backends.console.EmailBackend"
DEFAULT_FROM_EMAIL = os.environ.get(
    "DEFAULT_FROM_EMAIL", "School Fees Portal <no-reply@localhost>"
)
SERVER_EMAIL = os.environ.get("SERVER_EMAIL", DEFAULT_FROM_EMAIL)
ADMINS = [
    (os.environ.get("ADMIN_NAME", "Admin"), e) for e in env_list("ADMIN_EMAILS")
]

# School management backend (REST)
BACKEND_API_URL = os.environ.get("BACKEND_API_URL", "http://localhost:8000/api")
BACKEND_API_TIMEOUT = env_int("BACKEND_API_TIMEOUT", 20)
# fee structures and academic years
REFERENCE_DATA_CACHE_SECONDS = env_int("REFERENCE_DATA_CACHE_SECONDS", 300)

# Payment gateway (Flutterwave v3)
FLUTTERWAVE_API_URL = os.environ.get(
    "FLUTTERWAVE_API_URL", "https://api.flutterwave.com/v3"
)
FLUTTERWAVE_PUBLIC_KEY = os.environ.get("FLUTTERWAVE_PUBLIC_KEY", "")
FLUTTERWAVE_SECRET_KEY = os.environ.get("FLUTTERWAVE_SECRET_KEY", "")
PAYMENT_CURRENCY = os.environ.get("PAYMENT_CURRENCY", "NGN")
# abandoned checkouts are dropped from the session after this long
PENDING_CHECKOUT_MAX_AGE_SECONDS = env_int("PENDING_CHECKOUT_MAX_AGE_SECONDS", 60 * 60 * 24)
CURRENCY_SYMBOL = os.environ.get(
    "CURRENCY_SYMBOL",
    {"NGN": "₦", "GHS": "GH₵", "KES": "KSh ", "USD": "$"}.get(
        PAYMENT_CURRENCY, f"{PAYMENT_CURRENCY} "
    ),
)

SCHOOL_NAME = os.environ.get("SCHOOL_NAME", "Raddai Metropolitan School")
SCHOOL_LOGO_URL = os.environ.get("SCHOOL_LOGO_URL", "")

SESSION_EXPIRED_LOGOUT_DELAY_SECONDS = env_int(
    "SESSION_EXPIRED_LOGOUT_DELAY_SECONDS", 2
)

# Public base URL; used in admin emails and whitelisted for host/CSRF checks
SITE_URL = os.environ.get("SITE_URL", "http://localhost:8001")
_site = urlparse(SITE_URL)
if _site.hostname and "*" not in ALLOWED_HOSTS and _site.hostname not in ALLOWED_HOSTS:
    ALLOWED_HOSTS.append(_site.hostname)
if _site.scheme in ("http", "https") and _site.netloc:
    _origin = f"{_site.scheme}://{_site.netloc}"
    if _origin not in CSRF_TRUSTED_ORIGINS:
        CSRF_TRUSTED_ORIGINS.append(_origin)

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
PROJECT_APPS = ("accounts", "backend_api", "students", "fees", "results", "jobs")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "simple"},
        "mail_admins": {
            "level": "ERROR",
            "class": "django.utils.log.AdminEmailHandler",
        },
    },
    "loggers": {
        "django.request": {"handlers": ["mail_admins"], "level": "ERROR"},
        "django.security": {"handlers": ["mail_admins"], "level": "ERROR"},
        "django.security.DisallowedHost": {"handlers": [], "propagate": False},
        **{
            name: {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False}
            for name in PROJECT_APPS
        },
    },
}

# login throttling
AXES_ENABLED = env_bool("AXES_ENABLED", True)
AXES_FAILURE_LIMIT = env_int("AXES_FAILURE_LIMIT", 5)
AXES_COOLOFF_TIME = timedelta(minutes=15)
AXES_LOCKOUT_PARAMETERS = ["username", "ip_address"]
AXES_RESET_ON_SUCCESS = True
AXES_LOCKOUT_TEMPLATE = "accounts/lockout.html"
