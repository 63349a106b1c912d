"""
Settings for the test suite.
"""

from .base import *  # noqa: F401,F403

DEBUG = False

ENVIRONMENT = 'test'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

CELERY_BROKER_URL = 'memory://'
CELERY_RESULT_BACKEND = 'cache+memory://'
CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True

CASE_WORKFLOW = {**CASE_WORKFLOW, 'STATE_BACKEND': 'memory'}  # noqa: F405

LOGGING['loggers']['apps']['level'] = 'WARNING'  # noqa: F405
