"""Update lifecycle notifications."""

import asyncio
import logging
from collections import deque
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from horizon.models.change import Change, ImpactLevel
from horizon.utils.process import CommandRunner


logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 1000


class NotificationLevel(str, Enum):
    """Severity of a notification."""
    DEBUG = "debug"
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class UpdateEventType(str, Enum):
    """Lifecycle events of an update run."""
    UPDATE_STARTED = "update_started"
    NO_CHANGES = "no_changes"
    REBOOT_REQUIRED = "reboot_required"
    CHANGE_APPLIED = "change_applied"
    CHANGE_FAILED = "change_failed"
    UPDATE_COMPLETED = "update_completed"
    UPDATE_FAILED = "update_failed"
    ROLLBACK_STARTED = "rollback_started"
    ROLLBACK_COMPLETED = "rollback_completed"
    ROLLBACK_FAILED = "rollback_failed"


class Notification(BaseModel):
    """What every handler receives."""
    level: NotificationLevel
    title: str
    message: str
    urgent: bool = False
    event_type: Optional[UpdateEventType] = None
    timestamp: datetime = Field(default_factory=datetime.now)


class UpdateEvent(BaseModel):
    """Entry of the in-memory event history."""
    timestamp: datetime = Field(default_factory=datetime.now)
    event_type: UpdateEventType
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class NotificationHandler:
    """Base class for notification sinks."""

    name = "handler"

    async def notify(self, notification: Notification):
        """Deliver one notification."""
        raise NotImplementedError


_LOG_LEVELS = {
    NotificationLevel.DEBUG: logging.DEBUG,
    NotificationLevel.INFO: logging.INFO,
    NotificationLevel.SUCCESS: logging.INFO,
    NotificationLevel.WARNING: logging.WARNING,
    NotificationLevel.ERROR: logging.ERROR,
    NotificationLevel.CRITICAL: logging.CRITICAL,
}


class LogHandler(NotificationHandler):
    """Structured log line through the standard logging module."""

    name = "log"

    def __init__(self, logger_name: str = "horizon.updates"):
        self.logger = logging.getLogger(logger_name)

    async def notify(self, notification: Notification):
        prefix = "[URGENT] " if notification.urgent else ""
        self.logger.log(
            _LOG_LEVELS[notification.level],
            f"{prefix}{notification.title}: {notification.message}"
        )


class FileLogHandler(NotificationHandler):
    """Append-only update log file."""

    name = "file"

    def __init__(self, path: Path):
        self.path = Path(path)

    def _append(self, line: str):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line)

    async def notify(self, notification: Notification):
        urgent = " URGENT" if notification.urgent else ""
        line = (
            f"{notification.timestamp.isoformat()} [{notification.level.value.upper()}{urgent}] "
            f"{notification.title}: {notification.message}\n"
        )
        await asyncio.to_thread(self._append, line)


_JOURNAL_PRIORITIES = {
    NotificationLevel.DEBUG: "debug",
    NotificationLevel.INFO: "info",
    NotificationLevel.SUCCESS: "notice",
    NotificationLevel.WARNING: "warning",
    NotificationLevel.ERROR: "err",
    NotificationLevel.CRITICAL: "crit",
}


class JournalHandler(NotificationHandler):
    """Host system log through ``systemd-cat``."""

    name = "journal"

    def __init__(self, runner: Optional[CommandRunner] = None,
                 identifier: str = "horizonos-update"):
        self.runner = runner or CommandRunner()
        self.identifier = identifier

    async def notify(self, notification: Notification):
        priority = _JOURNAL_PRIORITIES[notification.level]
        await self.runner.check(
            ["systemd-cat", "-t", self.identifier, "-p", priority],
            input=f"{notification.title}: {notification.message}\n",
        )


class UpdateNotifier:
    """Fans lifecycle events out to handlers and keeps a bounded history.

    Handlers run concurrently. A handler failure is logged and never
    propagated to the update run.
    """

    def __init__(self, handlers: Optional[Iterable[NotificationHandler]] = None,
                 history_size: int = DEFAULT_HISTORY_SIZE):
        self.handlers: List[NotificationHandler] = list(handlers or [])
        self.history: deque = deque(maxlen=history_size)

    def add_handler(self, handler: NotificationHandler):
        self.handlers.append(handler)

    def remove_handler(self, handler: NotificationHandler):
        if handler in self.handlers:
            self.handlers.remove(handler)

    async def notify(self, level: NotificationLevel, title: str, message: str,
                     urgent: bool = False, event_type: Optional[UpdateEventType] = None):
        """Send a notification to every handler."""
        notification = Notification(
            level=level, title=title, message=message,
            urgent=urgent, event_type=event_type,
        )
        handlers = list(self.handlers)
        results = await asyncio.gather(
            *(handler.notify(notification) for handler in handlers),
            return_exceptions=True
        )
        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.warning(f"Notification handler {handler.name} failed: {result}")

    def _record(self, event_type: UpdateEventType, message: str,
                details: Optional[Dict[str, Any]] = None,
                error: Optional[BaseException] = None) -> UpdateEvent:
        event = UpdateEvent(
            event_type=event_type,
            message=message,
            details=details or {},
            error=str(error) if error is not None else None,
        )
        self.history.append(event)
        return event

    def get_history(self, limit: Optional[int] = None,
                    event_type: Optional[UpdateEventType] = None) -> List[UpdateEvent]:
        """Return recorded events, oldest first."""
        events = [e for e in self.history if event_type is None or e.event_type == event_type]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def clear_history(self):
        self.history.clear()

    async def update_started(self, change_count: int):
        message = f"Starting system update with {change_count} change(s)"
        self._record(UpdateEventType.UPDATE_STARTED, message, {"change_count": change_count})
        await self.notify(NotificationLevel.INFO, "System update started", message,
                          event_type=UpdateEventType.UPDATE_STARTED)

    async def no_changes(self):
        message = "System is already up to date"
        self._record(UpdateEventType.NO_CHANGES, message)
        await self.notify(NotificationLevel.INFO, "No changes", message,
                          event_type=UpdateEventType.NO_CHANGES)

    async def reboot_required(self, changes: List[Change]):
        message = (
            f"{len(changes)} change(s) require a reboot: "
            + "; ".join(c.description for c in changes)
        )
        self._record(UpdateEventType.REBOOT_REQUIRED, message,
                     {"changes": [c.description for c in changes]})
        await self.notify(NotificationLevel.WARNING, "Reboot required", message,
                          urgent=True, event_type=UpdateEventType.REBOOT_REQUIRED)

    async def change_applied(self, change: Change):
        self._record(UpdateEventType.CHANGE_APPLIED, change.description,
                     {"change_type": change.change_type.value, "impact": change.impact.value})
        if change.impact >= ImpactLevel.MEDIUM:
            await self.notify(NotificationLevel.SUCCESS, "Change applied", change.description,
                              event_type=UpdateEventType.CHANGE_APPLIED)

    async def change_failed(self, change: Change, error: BaseException):
        self._record(UpdateEventType.CHANGE_FAILED, change.description,
                     {"change_type": change.change_type.value}, error)
        await self.notify(NotificationLevel.ERROR, "Change failed",
                          f"{change.description}: {error}", urgent=True,
                          event_type=UpdateEventType.CHANGE_FAILED)

    async def update_completed(self, applied: int, failed: int = 0, pending_reboot: int = 0):
        message = f"Applied {applied} change(s)"
        if failed:
            message += f", {failed} failed"
        if pending_reboot:
            message += f", {pending_reboot} pending reboot"
        self._record(UpdateEventType.UPDATE_COMPLETED, message, {
            "applied": applied, "failed": failed, "pending_reboot": pending_reboot,
        })
        level = NotificationLevel.WARNING if failed else NotificationLevel.SUCCESS
        await self.notify(level, "System update completed", message,
                          urgent=bool(pending_reboot),
                          event_type=UpdateEventType.UPDATE_COMPLETED)

    async def update_failed(self, error: BaseException):
        message = f"System update failed: {error}"
        self._record(UpdateEventType.UPDATE_FAILED, message, error=error)
        await self.notify(NotificationLevel.ERROR, "System update failed", message,
                          urgent=True, event_type=UpdateEventType.UPDATE_FAILED)

    async def rollback_started(self):
        message = "Rolling back to the pre-update snapshot"
        self._record(UpdateEventType.ROLLBACK_STARTED, message)
        await self.notify(NotificationLevel.WARNING, "Rollback started", message,
                          urgent=True, event_type=UpdateEventType.ROLLBACK_STARTED)

    async def rollback_completed(self):
        message = "System restored to the pre-update snapshot"
        self._record(UpdateEventType.ROLLBACK_COMPLETED, message)
        await self.notify(NotificationLevel.WARNING, "Rollback completed", message,
                          urgent=True, event_type=UpdateEventType.ROLLBACK_COMPLETED)

    async def rollback_failed(self, error: BaseException):
        message = f"Rollback failed, system state is unknown: {error}"
        self._record(UpdateEventType.ROLLBACK_FAILED, message, error=error)
        await self.notify(NotificationLevel.CRITICAL, "Rollback failed", message,
                          urgent=True, event_type=UpdateEventType.ROLLBACK_FAILED)
