import os

from celery import Celery

# set the default Django settings module for the 'celery' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

app = Celery('convenu')

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
# - namespace='CELERY' means all celery-related configuration keys
#   should have a `CELERY_` prefix.
app.config_from_object('django.conf:settings', namespace='CELERY')

# Load task modules from all registered Django app configs.
app.autodiscover_tasks()

from handshakes.celery_schedules import HANDSHAKE_CELERY_BEAT_SCHEDULE  # noqa: E402

app.conf.beat_schedule.update(HANDSHAKE_CELERY_BEAT_SCHEDULE)

# Ensure DB connections are properly managed around every Celery task
from celery import signals  # noqa: E402
from django.db import close_old_connections  # noqa: E402


@signals.task_prerun.connect
def _celery_prerun_close_stale_conns(*args, **kwargs):
    # Drop any stale/dangling DB connections before the task starts
    close_old_connections()


@signals.task_postrun.connect
def _celery_postrun_close_stale_conns(*args, **kwargs):
    close_old_connections()
