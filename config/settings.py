"""
Django settings for the Convenu backend.

Every deployment value is read from the environment (or a .env file) through
python-decouple; the defaults below are safe for local development only.
"""

from datetime import timedelta
from pathlib import Path

from decouple import config, Csv

from .logging import LOGGING  # noqa: F401

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = config('SECRET_KEY', default='django-insecure-convenu-local-development-key')
DEBUG = config('DEBUG', default=False, cast=bool)
ALLOWED_HOSTS = config('ALLOWED_HOSTS', default='localhost,127.0.0.1', cast=Csv())

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'graphene_django',
    'graphql_jwt.refresh_token.apps.RefreshTokenConfig',
    'users',
    'contacts',
    'blockchain',
    'handshakes',
    'achievements',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'config.wsgi.application'
ASGI_APPLICATION = 'config.asgi.application'

# Database: PostgreSQL in every deployed environment, SQLite as a local fallback
if config('DB_NAME', default=''):
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME': config('DB_NAME'),
            'USER': config('DB_USER', default='postgres'),
            'PASSWORD': config('DB_PASSWORD', default=''),
            'HOST': config('DB_HOST', default='localhost'),
            'PORT': config('DB_PORT', default='5432'),
            'CONN_MAX_AGE': config('DB_CONN_MAX_AGE', default=60, cast=int),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }

AUTH_USER_MODEL = 'users.User'
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

AUTH_PASSWORD_VALIDATORS = [
    {'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator'},
    {'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator'},
    {'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator'},
    {'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator'},
]

AUTHENTICATION_BACKENDS = [
    'graphql_jwt.backends.JSONWebTokenBackend',
    'django.contrib.auth.backends.ModelBackend',
]

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

# GraphQL
GRAPHENE = {
    'SCHEMA': 'config.schema.schema',
    'MIDDLEWARE': [
        'graphql_jwt.middleware.JSONWebTokenMiddleware',
    ],
}

GRAPHQL_JWT = {
    'JWT_VERIFY_EXPIRATION': True,
    'JWT_LONG_RUNNING_REFRESH_TOKEN': True,
    'JWT_EXPIRATION_DELTA': timedelta(
        minutes=config('JWT_EXPIRATION_MINUTES', default=60, cast=int)
    ),
}

# Celery
CELERY_BROKER_URL = config('CELERY_BROKER_URL', default='redis://localhost:6379/0')
CELERY_RESULT_BACKEND = config('CELERY_RESULT_BACKEND', default='redis://localhost:6379/0')
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_ALWAYS_EAGER = config('CELERY_TASK_ALWAYS_EAGER', default=False, cast=bool)

# Algorand
ALGORAND_NETWORK = config('ALGORAND_NETWORK', default='testnet')
ALGORAND_ALGOD_ADDRESS = config('ALGORAND_ALGOD_ADDRESS', default='https://testnet-api.algonode.cloud')
ALGORAND_ALGOD_TOKEN = config('ALGORAND_ALGOD_TOKEN', default='')

BLOCKCHAIN_CONFIG = {
    'NETWORK': ALGORAND_NETWORK,
}

# Handshake protocol
HANDSHAKE_TREASURY_ADDRESS = config('HANDSHAKE_TREASURY_ADDRESS', default='')
HANDSHAKE_MINTER_MNEMONIC = config('HANDSHAKE_MINTER_MNEMONIC', default='')
HANDSHAKE_MINT_FEE_MICRO = config('HANDSHAKE_MINT_FEE_MICRO', default=10_000, cast=int)  # 0.01 ALGO
HANDSHAKE_TTL_HOURS = config('HANDSHAKE_TTL_HOURS', default=48, cast=int)
HANDSHAKE_POINTS_PER_HANDSHAKE = config('HANDSHAKE_POINTS_PER_HANDSHAKE', default=10, cast=int)
HANDSHAKE_CONFIRMATION_ROUNDS = config('HANDSHAKE_CONFIRMATION_ROUNDS', default=6, cast=int)
HANDSHAKE_MINT_LEASE_SECONDS = config('HANDSHAKE_MINT_LEASE_SECONDS', default=300, cast=int)
HANDSHAKE_AUTO_MINT = config('HANDSHAKE_AUTO_MINT', default=True, cast=bool)
HANDSHAKE_TOKEN_METADATA_URL = config('HANDSHAKE_TOKEN_METADATA_URL', default='https://convenu.app/handshakes/')
