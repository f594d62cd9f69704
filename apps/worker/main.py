"""
Celery worker entry point.

This imports the Celery app and tasks from the API module.
Run with: celery -A main worker -B (from this directory, with apps/api on the path).
"""
import sys
import os

# Add API directory to path so we can import tasks
sys.path.insert(0, os.environ.get("FILEPAY_API_DIR", "/api"))

# Import Celery app and tasks from API
from tasks import celery_app  # noqa: E402

celery_app.autodiscover_tasks(['tasks'])


@celery_app.task(name="worker.health_check")
def health_check():
    """Health check task"""
    return {"status": "ok"}
