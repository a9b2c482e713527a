"""
Services package

Domain services: recurrence expansion, instance persistence, reminders,
notifications, calendar sync and the scheduler tick.
"""

from .instance_store import InstanceStore
from .reminder_planner import ReminderPlanner
from .notifications import NotificationDispatcher, WhatsAppDispatcher
from .calendar_adapter import CalendarSyncAdapter, GoogleCalendarAdapter
from .sync_coordinator import CommitmentService, SyncCoordinator
from .agenda import AgendaService
from .scheduler_runner import SchedulerRunner

__all__ = [
    "InstanceStore",
    "ReminderPlanner",
    "NotificationDispatcher",
    "WhatsAppDispatcher",
    "CalendarSyncAdapter",
    "GoogleCalendarAdapter",
    "CommitmentService",
    "SyncCoordinator",
    "AgendaService",
    "SchedulerRunner",
]
