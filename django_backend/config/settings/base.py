"""
Base Django settings for the case workflow backend.

Environment specific modules import everything from here and override
what they need. Values that differ per deployment are read from the
environment.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent.parent

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'insecure-development-key')

DEBUG = os.environ.get('DJANGO_DEBUG', 'False').lower() == 'true'

ALLOWED_HOSTS = os.environ.get('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',')

ENVIRONMENT = os.environ.get('ENVIRONMENT', 'development')

INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'rest_framework',
    'django_celery_beat',
    'apps.common',
    'apps.users',
    'apps.notifications',
    'apps.cases',
    'apps.tasks',
    'apps.workflows',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
]

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.environ.get('DATABASE_NAME', str(BASE_DIR / 'db.sqlite3')),
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

REST_FRAMEWORK = {
    'EXCEPTION_HANDLER': 'apps.common.exceptions.custom_exception_handler',
}

# Celery
CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', 'redis://localhost:6379/0')
CELERY_TASK_ALWAYS_EAGER = os.environ.get('CELERY_ALWAYS_EAGER', 'False').lower() == 'true'
CELERY_TIMEZONE = TIME_ZONE

# Engine tunables
CASE_WORKFLOW = {
    'CONFLICT_WINDOW_HOURS': 2,
    'CONFLICT_THRESHOLD_MINUTES': 30,
    'SCHEDULE_PAST_TOLERANCE_SECONDS': 60,
    'AVAILABLE_HOURS_PER_WEEK': 40,
    'WORKLOAD_THRESHOLD': 0.8,
    'PENDING_AUTOMATION_DRAIN_SECONDS': 60,
    'RECURRING_TASKS_INTERVAL_MINUTES': 15,
    'DATE_TRIGGER_HOUR': 7,
    'DEFAULT_PHASE_DURATION_DAYS': 7,
    'HISTORY_LIMIT': 1000,
    'STATE_BACKEND': os.environ.get('CASE_WORKFLOW_STATE_BACKEND', 'memory'),
    'STATE_REDIS_URL': os.environ.get('CASE_WORKFLOW_STATE_REDIS_URL'),
    'STATE_KEY_PREFIX': 'case_workflow',
}

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '[{asctime}] {levelname} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'apps': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
        'celery': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
    },
}
