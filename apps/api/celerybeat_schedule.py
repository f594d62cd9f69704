"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Daily storage report with a signed one-hour cleanup link for the admin.
    'send-storage-report': {
        'task': 'tasks.send_storage_report',
        'schedule': crontab(hour=8, minute=0),  # 08:00 UTC daily
    },
}
