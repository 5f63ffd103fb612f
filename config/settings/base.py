"""
Django base settings for intel_task_scheduler project.
Shared settings between development, production and test.

Scheduler Update: Added task scheduler and Django-Q2 overdue sweep configuration.
"""

from pathlib import Path
from decouple import config, Csv

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent.parent

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = config('SECRET_KEY', default='django-insecure-change-me-in-production')

# Application definition
DJANGO_APPS = [
    'django.contrib.auth',
    'django.contrib.contenttypes',
]

THIRD_PARTY_APPS = [
    'django_filters',
    'django_q',
]

LOCAL_APPS = [
    'apps.accounts',
    'apps.organizations',
    'apps.collection_points',
    'apps.intel_tasks',
    'apps.activity_log',
    'apps.reports',
]

INSTALLED_APPS = DJANGO_APPS + THIRD_PARTY_APPS + LOCAL_APPS


# =============================================================================
# AUTHENTICATION - CRITICAL: Custom User Model
# =============================================================================
# Must be set BEFORE first migration
AUTH_USER_MODEL = 'accounts.User'

# Password hashing - use Argon2 as primary
PASSWORD_HASHERS = [
    'django.contrib.auth.hashers.Argon2PasswordHasher',
    'django.contrib.auth.hashers.PBKDF2PasswordHasher',
    'django.contrib.auth.hashers.PBKDF2SHA1PasswordHasher',
    'django.contrib.auth.hashers.BCryptSHA256PasswordHasher',
]


# =============================================================================
# INTERNATIONALIZATION & TIMEZONE
# =============================================================================
LANGUAGE_CODE = 'en-us'

# CRITICAL: Period boundaries, due times and next-run times are all computed
# in this zone. Changing it shifts every template's schedule.
TIME_ZONE = config('TIME_ZONE', default='Asia/Shanghai')

USE_I18N = True

USE_TZ = True


# =============================================================================
# TASK SCHEDULER
# =============================================================================
# Tick interval of the in-process template scheduler (milliseconds)
TASK_SCHEDULER_INTERVAL_MS = config('TASK_SCHEDULER_INTERVAL_MS', default=300000, cast=int)

# Start the scheduler thread with the app server
TASK_SCHEDULER_ENABLED = config('TASK_SCHEDULER_ENABLED', default=True, cast=bool)

# Serialize ticks across processes (one scheduler thread per web worker)
# with a Postgres advisory lock; ignored on other databases
TASK_SCHEDULER_LEADER_LOCK_ENABLED = config('TASK_SCHEDULER_LEADER_LOCK_ENABLED', default=False, cast=bool)
TASK_SCHEDULER_LEADER_LOCK_ID = config('TASK_SCHEDULER_LEADER_LOCK_ID', default=4242101, cast=int)

# Rows per INSERT when instantiating tasks from a template
TASK_INSERT_BATCH_SIZE = config('TASK_INSERT_BATCH_SIZE', default=500, cast=int)

# Overdue sweep interval for the Django-Q2 schedule (minutes)
OVERDUE_SWEEP_MINUTES = config('OVERDUE_SWEEP_MINUTES', default=60, cast=int)

# Set by the test settings; keeps the scheduler thread from starting
IS_TESTING = False


# =============================================================================
# DJANGO-Q2 SETTINGS (Background Tasks)
# =============================================================================
Q_CLUSTER = {
    'name': 'intel_task_scheduler',
    'workers': config('Q_CLUSTER_WORKERS', default=2, cast=int),
    'recycle': 500,
    'timeout': 60,
    'compress': True,
    'save_limit': 250,
    'queue_limit': 500,
    'cpu_affinity': 1,
    'label': 'Django Q2',
    'orm': 'default',
}


# =============================================================================
# ALLOWED HOSTS
# =============================================================================
ALLOWED_HOSTS = config('ALLOWED_HOSTS', default='localhost,127.0.0.1', cast=Csv())


# =============================================================================
# DEFAULT PRIMARY KEY FIELD TYPE
# =============================================================================
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'
