"""Tests for live update orchestration."""

import asyncio
import subprocess
from collections import Counter
from unittest.mock import AsyncMock

import pytest

from horizon.engine.applier import HostApplier
from horizon.engine.live_update import (
    Failed, LiveUpdateManager, NoChangesRequired, PartialSuccess, RebootRequired, Success,
    UpdatePhase,
)
from horizon.engine.notifier import UpdateEventType, UpdateNotifier
from horizon.engine.state_sync import StateSyncManager
from horizon.errors import RollbackError
from horizon.models.change import ChangeType
from horizon.models.config import UpdateOptions
from horizon.models.snapshot import ConfigSnapshot, Service
from horizon.utils.systemd import SystemdDBus


class FakeApplier:
    """Applier double failing on selected change types."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.applied = []

    async def apply(self, change, dry_run=False):
        if change.change_type in self.failing:
            raise RuntimeError(f"cannot apply {change.change_type.value}")
        self.applied.append(change)


@pytest.fixture
def state_sync(tmp_path, runner):
    runner.on("hostname", stdout="workstation\n")
    runner.on("timedatectl", "show", stdout="UTC\n")
    return StateSyncManager(tmp_path / "state", runner)


def _manager(state_sync, applier):
    return LiveUpdateManager(applier, state_sync, UpdateNotifier())


def _desired(base_snapshot, **system):
    return base_snapshot.model_copy(update={
        "system": base_snapshot.system.model_copy(update=system),
        "packages": base_snapshot.packages + ConfigSnapshot.builder().package("htop").build().packages,
    })


@pytest.mark.asyncio
class TestApplyLiveUpdates:
    """Test the reconciliation protocol."""

    async def test_no_changes(self, state_sync, base_snapshot):
        applier = FakeApplier()
        manager = _manager(state_sync, applier)

        result = await manager.apply_live_updates(base_snapshot, base_snapshot)

        assert isinstance(result, NoChangesRequired)
        assert manager.phase == UpdatePhase.COMMITTED
        assert applier.applied == []

    async def test_safety_gate_blocks_reboot_changes(self, state_sync, base_snapshot):
        applier = FakeApplier()
        manager = _manager(state_sync, applier)
        desired = ConfigSnapshot.builder("laptop").packages("git", "vim").build()

        result = await manager.apply_live_updates(base_snapshot, desired)

        assert isinstance(result, RebootRequired)
        assert any(c.change_type == ChangeType.USER_REMOVE for c in result.changes)
        assert applier.applied == []
        assert await state_sync.list_snapshots() == []
        assert manager.phase == UpdatePhase.REBOOT_BLOCKED

    async def test_allow_partial_applies_live_part(self, state_sync, base_snapshot):
        applier = FakeApplier()
        manager = _manager(state_sync, applier)
        desired = base_snapshot.model_copy(update={
            "system": base_snapshot.system.model_copy(update={"hostname": "laptop"}),
            "users": (),
        })

        result = await manager.apply_live_updates(
            base_snapshot, desired, UpdateOptions(allow_partial_update=True)
        )

        assert isinstance(result, Success)
        assert [c.change_type for c in result.applied] == [ChangeType.SYSTEM_CONFIG]
        assert [c.change_type for c in result.pending_reboot] == [ChangeType.USER_REMOVE]

    async def test_success_records_desired(self, state_sync, base_snapshot):
        await state_sync.sync_state(base_snapshot)
        applier = FakeApplier()
        manager = _manager(state_sync, applier)
        desired = _desired(base_snapshot, hostname="laptop")

        result = await manager.apply_live_updates(base_snapshot, desired)

        assert isinstance(result, Success)
        assert len(result.applied) == 2
        assert await state_sync.load_current() == desired
        assert len(await state_sync.list_snapshots()) == 1
        assert manager.last_result is result

    async def test_second_run_is_idempotent(self, state_sync, base_snapshot):
        await state_sync.sync_state(base_snapshot)
        manager = _manager(state_sync, FakeApplier())
        desired = _desired(base_snapshot, hostname="laptop")

        await manager.apply_live_updates(await state_sync.load_current(), desired)
        result = await manager.apply_live_updates(await state_sync.load_current(), desired)

        assert isinstance(result, NoChangesRequired)

    async def test_failure_rolls_back_byte_for_byte(self, state_sync, base_snapshot):
        await state_sync.sync_state(base_snapshot)
        before = state_sync.record_path.read_bytes()
        manager = _manager(state_sync, FakeApplier(failing={ChangeType.PACKAGE_INSTALL}))

        result = await manager.apply_live_updates(
            base_snapshot, _desired(base_snapshot, hostname="laptop")
        )

        assert isinstance(result, Failed)
        assert result.rolled_back
        assert state_sync.record_path.read_bytes() == before
        assert manager.phase == UpdatePhase.ROLLED_BACK
        assert [f.change.change_type for f in result.failed] == [ChangeType.PACKAGE_INSTALL]

    async def test_halt_skips_rest_of_group(self, state_sync, base_snapshot):
        await state_sync.sync_state(base_snapshot)
        applier = FakeApplier(failing={ChangeType.PACKAGE_INSTALL})
        manager = _manager(state_sync, applier)
        desired = _desired(base_snapshot).model_copy(update={
            "repositories": ConfigSnapshot.builder().repository("extra", "https://m/x").build().repositories,
        })

        result = await manager.apply_live_updates(
            base_snapshot, desired, UpdateOptions(rollback_on_failure=False)
        )

        assert isinstance(result, Failed)
        assert not result.rolled_back
        assert [c.change_type for c in result.skipped] == [ChangeType.REPOSITORY]
        assert manager.phase == UpdatePhase.FAILED

    async def test_continue_on_error_gives_partial_success(self, state_sync, base_snapshot):
        await state_sync.sync_state(base_snapshot)
        manager = _manager(state_sync, FakeApplier(failing={ChangeType.PACKAGE_INSTALL}))
        desired = _desired(base_snapshot, hostname="laptop")

        result = await manager.apply_live_updates(
            base_snapshot, desired, UpdateOptions(continue_on_error=True)
        )

        assert isinstance(result, PartialSuccess)
        assert [c.change_type for c in result.applied] == [ChangeType.SYSTEM_CONFIG]
        assert len(result.failed) == 1
        assert result.to_dict()["status"] == "partial_success"

    async def test_rollback_failure_is_distinct(self, state_sync, base_snapshot, runner):
        await state_sync.sync_state(base_snapshot)
        runner.fail("hostnamectl")
        notifier = UpdateNotifier()
        manager = LiveUpdateManager(
            FakeApplier(failing={ChangeType.PACKAGE_INSTALL}), state_sync, notifier
        )

        result = await manager.apply_live_updates(
            base_snapshot, _desired(base_snapshot, hostname="laptop")
        )

        assert isinstance(result, Failed)
        assert isinstance(result.error, RollbackError)
        assert not result.rolled_back
        assert manager.phase == UpdatePhase.FAILED
        assert notifier.get_history(event_type=UpdateEventType.ROLLBACK_FAILED)

    async def test_dry_run_touches_nothing(self, state_sync, base_snapshot):
        await state_sync.sync_state(base_snapshot)
        before = state_sync.record_path.read_bytes()
        manager = _manager(state_sync, FakeApplier())

        result = await manager.apply_live_updates(
            base_snapshot, _desired(base_snapshot, hostname="laptop"), UpdateOptions(dry_run=True)
        )

        assert isinstance(result, Success)
        assert state_sync.record_path.read_bytes() == before
        assert await state_sync.list_snapshots() == []


class TestCapability:
    """Test the read-only planning surface."""

    def test_can_apply_live(self, state_sync, base_snapshot):
        manager = _manager(state_sync, FakeApplier())
        capability = manager.can_apply_live_updates(
            base_snapshot, _desired(base_snapshot, hostname="laptop")
        )

        assert capability.can_apply_live
        assert len(capability.live_changes) == 2
        assert capability.estimated_duration > 0

    def test_reboot_needed(self, state_sync, base_snapshot):
        manager = _manager(state_sync, FakeApplier())
        desired = base_snapshot.model_copy(update={"users": ()})

        capability = manager.can_apply_live_updates(base_snapshot, desired)

        assert not capability.can_apply_live
        assert capability.to_dict()["reboot_required"][0]["change_type"] == "user_remove"


class TrackingApplier:
    """Applier double recording overlap per resource key and overall."""

    def __init__(self, delay=0.02):
        self.delay = delay
        self.in_flight = Counter()
        self.max_per_key = Counter()
        self.running = 0
        self.max_running = 0
        self.events = []

    async def apply(self, change, dry_run=False):
        key = change.resource_key
        self.in_flight[key] += 1
        self.max_per_key[key] = max(self.max_per_key[key], self.in_flight[key])
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        self.events.append(("start", change))
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight[key] -= 1
            self.running -= 1
            self.events.append(("end", change))


def _busy_desired(base_snapshot):
    extra = (
        ConfigSnapshot.builder()
        .package("htop")
        .repository("extra", "https://mirror.example/extra")
        .build()
    )
    return base_snapshot.model_copy(update={
        "system": base_snapshot.system.model_copy(update={
            "hostname": "laptop", "timezone": "Europe/Berlin", "locale": "de_DE.UTF-8",
        }),
        "packages": base_snapshot.packages + extra.packages,
        "repositories": extra.repositories,
        "services": (Service(name="sshd", enabled=False), base_snapshot.services[1]),
    })


@pytest.mark.asyncio
class TestConcurrency:
    """Test resource grouping and ordering while applying."""

    async def test_same_resource_never_overlaps(self, state_sync, base_snapshot):
        applier = TrackingApplier()
        manager = _manager(state_sync, applier)

        result = await manager.apply_live_updates(base_snapshot, _busy_desired(base_snapshot))

        assert isinstance(result, Success)
        assert applier.max_per_key["package-manager"] == 1
        assert all(count == 1 for count in applier.max_per_key.values())
        package_changes = [c.change_type for kind, c in applier.events
                           if kind == "start" and c.resource_key == "package-manager"]
        assert package_changes == [ChangeType.PACKAGE_INSTALL, ChangeType.REPOSITORY]

    async def test_parallelism_is_bounded(self, state_sync, base_snapshot):
        applier = TrackingApplier()
        manager = _manager(state_sync, applier)

        await manager.apply_live_updates(
            base_snapshot, _busy_desired(base_snapshot),
            UpdateOptions(max_parallel_operations=2),
        )

        assert applier.max_running == 2

    async def test_service_reloads_follow_live_changes(self, state_sync, base_snapshot):
        applier = TrackingApplier()
        manager = _manager(state_sync, applier)

        await manager.apply_live_updates(base_snapshot, _busy_desired(base_snapshot))

        first_reload = next(
            i for i, (kind, c) in enumerate(applier.events)
            if kind == "start" and c.change_type == ChangeType.SERVICE_STATE
        )
        live_ends = [i for i, (kind, c) in enumerate(applier.events)
                     if kind == "end" and c.change_type != ChangeType.SERVICE_STATE]
        assert len(live_ends) == 5
        assert max(live_ends) < first_reload


async def _hang(*args):
    await asyncio.sleep(3600)


@pytest.mark.asyncio
async def test_hung_service_manager_fails_the_change(state_sync, base_snapshot, runner, tmp_path):
    """A service call that never answers fails its change instead of stalling the run."""
    await state_sync.sync_state(base_snapshot)
    runner.default_timeout = 0.05
    runner.raise_on("systemctl", "stop", error=subprocess.TimeoutExpired(["systemctl"], 0.05))
    systemd = SystemdDBus(runner)
    systemd.systemd = AsyncMock()
    systemd.systemd.call_stop_unit.side_effect = _hang
    applier = HostApplier(runner, systemd, systemd_dir=tmp_path / "units")
    manager = _manager(state_sync, applier)
    desired = base_snapshot.model_copy(update={
        "services": (Service(name="sshd", enabled=False), base_snapshot.services[1]),
    })

    result = await asyncio.wait_for(
        manager.apply_live_updates(
            base_snapshot, desired, UpdateOptions(rollback_on_failure=False)
        ),
        timeout=5,
    )

    assert isinstance(result, Failed)
    assert [f.change.change_type for f in result.failed] == [ChangeType.SERVICE_STATE]
    assert runner.called("systemctl", "stop", "sshd")
