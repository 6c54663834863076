"""
Celery application.

Workers run the settlement background jobs: escrow release once the review
window ends, the move of captured payments into provider review, and the
reconciliation of checkouts stuck in PENDING. Schedules are database rows
managed by django-celery-beat (seeded in settlement migration 0002).

    celery -A config worker -l info
    celery -A config beat -l info
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()
