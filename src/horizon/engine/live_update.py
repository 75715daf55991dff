"""Live update orchestration: detect, classify, snapshot, apply, roll back."""

import asyncio
import logging
import time
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from horizon.engine.applier import HostApplier
from horizon.engine.classifier import (
    ClassifiedChanges, UpdatePolicy, classify_changes, estimate_duration, group_by_resource,
)
from horizon.engine.detector import ChangeDetector
from horizon.engine.notifier import UpdateNotifier
from horizon.engine.state_sync import StateSyncManager, SystemSnapshot
from horizon.errors import ApplyError, LiveUpdateError, RollbackError
from horizon.models.change import Change
from horizon.models.config import UpdateOptions
from horizon.models.snapshot import ConfigSnapshot


logger = logging.getLogger(__name__)

__all__ = [
    "UpdateOptions",
    "UpdatePhase",
    "UpdateResult",
    "NoChangesRequired",
    "Success",
    "PartialSuccess",
    "RebootRequired",
    "Failed",
    "FailedChange",
    "LiveUpdateCapability",
    "LiveUpdateManager",
]


class UpdatePhase(str, Enum):
    """State of the current (or last) reconciliation run."""
    IDLE = "idle"
    DETECTING = "detecting"
    CLASSIFYING = "classifying"
    REBOOT_BLOCKED = "reboot_blocked"
    APPLYING = "applying"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


@dataclass
class FailedChange:
    """A change paired with the error that stopped it."""
    change: Change
    error: BaseException

    def to_dict(self) -> Dict[str, Any]:
        return {"change": self.change.description, "error": str(self.error)}


def _serialise(value: Any) -> Any:
    if isinstance(value, Change):
        return value.description
    if isinstance(value, FailedChange):
        return value.to_dict()
    if isinstance(value, BaseException):
        return str(value)
    if isinstance(value, list):
        return [_serialise(v) for v in value]
    return value


@dataclass
class UpdateResult:
    """Outcome of ``apply_live_updates``."""
    status: ClassVar[str] = "unknown"
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return False

    def to_dict(self) -> Dict[str, Any]:
        data = {"status": self.status}
        for f in fields(self):
            data[f.name] = _serialise(getattr(self, f.name))
        return data


@dataclass
class NoChangesRequired(UpdateResult):
    status: ClassVar[str] = "no_changes"

    @property
    def succeeded(self) -> bool:
        return True


@dataclass
class Success(UpdateResult):
    status: ClassVar[str] = "success"
    applied: List[Change] = field(default_factory=list)
    pending_reboot: List[Change] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return True


@dataclass
class PartialSuccess(UpdateResult):
    status: ClassVar[str] = "partial_success"
    applied: List[Change] = field(default_factory=list)
    failed: List[FailedChange] = field(default_factory=list)
    pending_reboot: List[Change] = field(default_factory=list)


@dataclass
class RebootRequired(UpdateResult):
    status: ClassVar[str] = "reboot_required"
    changes: List[Change] = field(default_factory=list)


@dataclass
class Failed(UpdateResult):
    status: ClassVar[str] = "failed"
    error: Optional[BaseException] = None
    applied: List[Change] = field(default_factory=list)
    failed: List[FailedChange] = field(default_factory=list)
    skipped: List[Change] = field(default_factory=list)
    rolled_back: bool = False


@dataclass
class LiveUpdateCapability:
    """Whether a desired snapshot can be reached without a reboot."""
    can_apply_live: bool
    live_changes: List[Change] = field(default_factory=list)
    service_reloads: List[Change] = field(default_factory=list)
    reboot_required: List[Change] = field(default_factory=list)
    estimated_duration: int = 0
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "can_apply_live": self.can_apply_live,
            "live_changes": [c.model_dump(mode="json") for c in self.live_changes],
            "service_reloads": [c.model_dump(mode="json") for c in self.service_reloads],
            "reboot_required": [c.model_dump(mode="json") for c in self.reboot_required],
            "estimated_duration": self.estimated_duration,
            "reason": self.reason,
        }


class _Run:
    """Bookkeeping for one apply phase."""

    def __init__(self, options: UpdateOptions, queue: List[Change]):
        self.options = options
        self.queue = queue
        self.stop_event = asyncio.Event()
        self.started: set = set()
        self.applied: set = set()
        self.failed: List[FailedChange] = []

    @property
    def aborted(self) -> bool:
        return self.stop_event.is_set()

    def applied_changes(self) -> List[Change]:
        return [c for c in self.queue if id(c) in self.applied]

    def skipped_changes(self) -> List[Change]:
        return [c for c in self.queue if id(c) not in self.started]

    def first_error(self) -> Optional[BaseException]:
        return self.failed[0].error if self.failed else None


class LiveUpdateManager:
    """Converges the running system from one snapshot to another.

    Runs are serialised. Within a run, live changes are applied per resource
    group with bounded parallelism, then service reloads in detection order.
    """

    def __init__(
        self,
        applier: HostApplier,
        state_sync: StateSyncManager,
        notifier: Optional[UpdateNotifier] = None,
        detector: Optional[ChangeDetector] = None,
        policy: Optional[UpdatePolicy] = None,
    ):
        self.applier = applier
        self.state_sync = state_sync
        self.notifier = notifier or UpdateNotifier()
        self.policy = policy or (detector.policy if detector else UpdatePolicy())
        self.detector = detector or ChangeDetector(self.policy)
        self.phase = UpdatePhase.IDLE
        self.last_result: Optional[UpdateResult] = None
        self._lock = asyncio.Lock()
        self._run: Optional[_Run] = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def plan(self, current: ConfigSnapshot, desired: ConfigSnapshot) -> ClassifiedChanges:
        """Detect and classify without touching the system."""
        changes = self.detector.detect_changes(current, desired)
        return classify_changes(changes, self.policy)

    def can_apply_live_updates(self, current: ConfigSnapshot,
                               desired: ConfigSnapshot) -> LiveUpdateCapability:
        """Report whether ``desired`` is reachable without a reboot, and how long it takes."""
        classified = self.plan(current, desired)
        if classified.requires_reboot:
            reason = f"{len(classified.reboot_required)} change(s) require a reboot"
        elif classified.is_empty():
            reason = "No changes required"
        else:
            reason = "All changes can be applied live"
        return LiveUpdateCapability(
            can_apply_live=not classified.requires_reboot,
            live_changes=classified.live,
            service_reloads=classified.service_reload,
            reboot_required=classified.reboot_required,
            estimated_duration=estimate_duration(classified),
            reason=reason,
        )

    def request_stop(self):
        """Stop the current run after the changes already in flight."""
        if self._run is not None:
            logger.warning("Stop requested, remaining changes will be skipped")
            self._run.stop_event.set()

    async def apply_live_updates(self, current: ConfigSnapshot, desired: ConfigSnapshot,
                                 options: Optional[UpdateOptions] = None) -> UpdateResult:
        """Run one reconciliation pass from ``current`` to ``desired``."""
        options = options or UpdateOptions()
        async with self._lock:
            started = time.monotonic()
            try:
                result = await self._reconcile(current, desired, options)
            except Exception:
                self.phase = UpdatePhase.FAILED
                raise
            finally:
                self._run = None
            logger.info(
                f"Update finished: {result.status} ({self.phase.value}) "
                f"in {time.monotonic() - started:.1f}s"
            )
            self.last_result = result
            return result

    async def _reconcile(self, current: ConfigSnapshot, desired: ConfigSnapshot,
                         options: UpdateOptions) -> UpdateResult:
        self.phase = UpdatePhase.DETECTING
        changes = self.detector.detect_changes(current, desired)
        if not changes:
            self.phase = UpdatePhase.COMMITTED
            await self.notifier.no_changes()
            return NoChangesRequired(message="System is already up to date")

        self.phase = UpdatePhase.CLASSIFYING
        classified = classify_changes(changes, self.policy)
        await self.notifier.update_started(len(changes))

        if classified.requires_reboot and not options.allow_partial_update:
            self.phase = UpdatePhase.REBOOT_BLOCKED
            await self.notifier.reboot_required(classified.reboot_required)
            return RebootRequired(
                message=f"{len(classified.reboot_required)} change(s) require a reboot",
                changes=classified.reboot_required,
            )

        snapshot: Optional[SystemSnapshot] = None
        if not options.dry_run:
            try:
                snapshot = await self.state_sync.create_snapshot()
            except Exception as e:
                self.phase = UpdatePhase.FAILED
                error = LiveUpdateError(f"Failed to snapshot system before update: {e}", cause=e)
                await self.notifier.update_failed(error)
                return Failed(message=str(error), error=error, skipped=classified.applicable)

        self.phase = UpdatePhase.APPLYING
        run = _Run(options, classified.applicable)
        self._run = run
        await self._apply_live(classified.live, run)
        for change in classified.service_reload:
            if run.aborted:
                break
            await self._apply_one(change, run)

        if run.aborted:
            return await self._abort(run, snapshot)

        if not options.dry_run:
            try:
                await self.state_sync.sync_state(desired)
            except Exception as e:
                self.phase = UpdatePhase.FAILED
                error = LiveUpdateError(f"Changes applied but state record not written: {e}", cause=e)
                await self.notifier.update_failed(error)
                return Failed(message=str(error), error=error,
                              applied=run.applied_changes(), failed=run.failed)

        self.phase = UpdatePhase.COMMITTED
        applied = run.applied_changes()
        await self.notifier.update_completed(
            len(applied), len(run.failed), len(classified.reboot_required)
        )

        if run.failed:
            return PartialSuccess(
                message=f"Applied {len(applied)} change(s), {len(run.failed)} failed",
                applied=applied,
                failed=run.failed,
                pending_reboot=classified.reboot_required,
            )
        return Success(
            message=f"Applied {len(applied)} change(s)",
            applied=applied,
            pending_reboot=classified.reboot_required,
        )

    async def _apply_live(self, changes: List[Change], run: _Run):
        semaphore = asyncio.Semaphore(run.options.max_parallel_operations)

        async def apply_group(group: List[Change]):
            async with semaphore:
                for change in group:
                    if run.aborted:
                        return
                    await self._apply_one(change, run)

        await asyncio.gather(*(apply_group(g) for g in group_by_resource(changes)))

    async def _apply_one(self, change: Change, run: _Run):
        run.started.add(id(change))
        try:
            await self.applier.apply(change, dry_run=run.options.dry_run)
        except Exception as e:
            error = e if isinstance(e, ApplyError) else ApplyError(
                f"{change.description}: {e}", cause=e
            )
            logger.error(f"Failed to apply change: {error}")
            run.failed.append(FailedChange(change, error))
            await self.notifier.change_failed(change, e)
            if not run.options.continue_on_error:
                run.stop_event.set()
            return

        run.applied.add(id(change))
        await self.notifier.change_applied(change)

    async def _abort(self, run: _Run, snapshot: Optional[SystemSnapshot]) -> UpdateResult:
        applied = run.applied_changes()
        skipped = run.skipped_changes()
        original = run.first_error() or LiveUpdateError("Update stopped before completion")

        if run.options.rollback_on_failure and snapshot is not None:
            await self.notifier.rollback_started()
            try:
                await self.state_sync.restore_snapshot(snapshot)
            except Exception as e:
                self.phase = UpdatePhase.FAILED
                error = RollbackError(
                    f"Rollback failed after update failure, system state is unknown: {e}",
                    cause=e,
                    original=original,
                )
                logger.critical(str(error))
                await self.notifier.rollback_failed(e)
                return Failed(message=str(error), error=error, applied=applied,
                              failed=run.failed, skipped=skipped, rolled_back=False)

            self.phase = UpdatePhase.ROLLED_BACK
            await self.notifier.rollback_completed()
            return Failed(
                message=f"Update failed and was rolled back: {original}",
                error=original, applied=applied, failed=run.failed,
                skipped=skipped, rolled_back=True,
            )

        self.phase = UpdatePhase.FAILED
        await self.notifier.update_failed(original)
        return Failed(
            message=f"Update failed: {original}",
            error=original, applied=applied, failed=run.failed, skipped=skipped,
        )
