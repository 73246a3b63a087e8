"""
Celery application configuration.
"""
from celery import Celery
from celery.schedules import crontab
from config.settings import get_settings

settings = get_settings()

# Create Celery app
app = Celery(
    'charity_ledger',
    broker=f'redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/0',
    backend=f'redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/0',
    include=['charity_ledger.scheduler.tasks']
)

# Celery configuration
app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes max per task
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
)

# Schedule configuration
app.conf.beat_schedule = {
    'match-conditional-orders': {
        'task': 'charity_ledger.scheduler.tasks.match_conditional_orders',
        'schedule': float(settings.ORDER_MATCH_INTERVAL_SECONDS),
    },
    'expire-conditional-orders': {
        'task': 'charity_ledger.scheduler.tasks.expire_conditional_orders',
        'schedule': crontab(minute='*/5'),
    },
    'mark-positions-to-market': {
        'task': 'charity_ledger.scheduler.tasks.mark_positions_to_market',
        'schedule': crontab(minute='*/15'),
    },
    'assign-unassigned-allocations': {
        'task': 'charity_ledger.scheduler.tasks.assign_unassigned_allocations',
        'schedule': crontab(minute=30),  # Every hour
    },
    'end-of-day-reconciliation': {
        'task': 'charity_ledger.scheduler.tasks.end_of_day_reconciliation',
        'schedule': crontab(hour=22, minute=0),  # 10 PM UTC daily
    },
}

if __name__ == '__main__':
    app.start()
