import os
from celery import Celery
from celery.schedules import crontab

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'backend.settings')

app = Celery('backend')

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
app.config_from_object('django.conf:settings', namespace='CELERY')

# Load task modules from all registered Django apps.
app.autodiscover_tasks()

app.conf.task_routes = {
    "credits.tasks.report_ledger_health": {"queue": "credits"},
    "credits.tasks.replay_webhook_failures": {"queue": "credits"},
    "credits.tasks.cleanup_webhook_event_logs": {"queue": "maintenance"},

    # Default queue
    '*': {'queue': 'default'},
}

app.conf.task_default_queue = 'default'

app.conf.update(
    # Serialization settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',

    # Timezone settings
    timezone='UTC',
    enable_utc=True,

    # Task execution settings
    task_track_started=True,
    task_time_limit=30 * 60,
    task_soft_time_limit=25 * 60,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Retry settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Queue settings
    task_queues={
        'default': {
            'exchange': 'default',
            'routing_key': 'default',
        },
        'credits': {
            'exchange': 'credits',
            'routing_key': 'credits',
        },
        'maintenance': {
            'exchange': 'maintenance',
            'routing_key': 'maintenance',
        },
    },

    task_ignore_result=False,
    task_store_errors_even_if_ignored=True,
)

app.conf.task_annotations = {
    'credits.tasks.replay_webhook_failures': {
        'rate_limit': '4/m',
        'time_limit': 600,
        'soft_time_limit': 540,
    },
}

app.conf.beat_schedule = {
    "credits_report_ledger_health_10min": {
        "task": "credits.tasks.report_ledger_health",
        "schedule": crontab(minute="*/10"),
        "options": {"queue": "credits"},
    },
    "credits_replay_webhook_failures_hourly": {
        "task": "credits.tasks.replay_webhook_failures",
        "schedule": crontab(minute=15),
        "options": {"queue": "credits"},
    },
    "credits_cleanup_webhook_logs_daily": {
        "task": "credits.tasks.cleanup_webhook_event_logs",
        "schedule": crontab(hour=4, minute=0),
        "options": {"queue": "maintenance"},
    },
}
