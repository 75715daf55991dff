"""Reconciliation engine: detection, classification, application and rollback."""

from horizon.engine.classifier import (
    UpdatePolicy, ClassifiedChanges, classify_changes, group_by_resource, estimate_duration,
)
from horizon.engine.detector import ChangeDetector, detect_changes
from horizon.engine.live_update import LiveUpdateManager, UpdatePhase
from horizon.engine.notifier import UpdateNotifier
from horizon.engine.state_sync import StateSyncManager

__all__ = [
    "UpdatePolicy",
    "ClassifiedChanges",
    "classify_changes",
    "group_by_resource",
    "estimate_duration",
    "ChangeDetector",
    "detect_changes",
    "LiveUpdateManager",
    "UpdatePhase",
    "UpdateNotifier",
    "StateSyncManager",
]
