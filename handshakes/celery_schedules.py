"""
Celery beat schedules for handshake tasks
"""
from celery.schedules import crontab

HANDSHAKE_CELERY_BEAT_SCHEDULE = {
    # Proactively expire pending handshakes nobody claimed in time
    'expire-stale-handshakes': {
        'task': 'handshakes.expire_stale_handshakes',
        'schedule': crontab(minute='*/15'),
    },
}
