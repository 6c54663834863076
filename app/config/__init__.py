# Load the Celery app with Django so @shared_task in settlement.tasks binds to it.
from config.celery import app as celery_app

__all__ = ("celery_app",)
