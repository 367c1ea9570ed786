"""
Background Job Queue
Dramatiq-based async task processing
"""
from app.services.jobs.broker import broker
from app.services.jobs.tasks import analyze_employee_task, sync_provider_task

__all__ = ["broker", "sync_provider_task", "analyze_employee_task"]
