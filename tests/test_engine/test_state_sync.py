"""Tests for the applied-configuration record and snapshots."""

import pytest

from horizon.engine.state_sync import StateSyncManager
from horizon.errors import StateSyncError


@pytest.fixture
def state_sync(tmp_path, runner):
    runner.on("hostname", stdout="workstation\n")
    runner.on("timedatectl", "show", stdout="UTC\n")
    runner.on("systemctl", "is-active", stdout="active\n")
    return StateSyncManager(tmp_path / "state", runner)


@pytest.mark.asyncio
class TestStateSyncManager:
    """Test record persistence, snapshots and restore."""

    async def test_nothing_applied(self, state_sync):
        assert await state_sync.load_current() is None

    async def test_sync_then_load(self, state_sync, base_snapshot):
        await state_sync.sync_state(base_snapshot)
        assert await state_sync.load_current() == base_snapshot

    async def test_corrupt_record(self, state_sync):
        state_sync.record_path.parent.mkdir(parents=True)
        state_sync.record_path.write_text("{not json")
        with pytest.raises(StateSyncError):
            await state_sync.load_current()

    async def test_snapshot_captures_host_state(self, state_sync, base_snapshot):
        await state_sync.sync_state(base_snapshot)
        snapshot = await state_sync.create_snapshot()

        assert snapshot.record == state_sync.record_path.read_bytes()
        assert snapshot.hostname == "workstation"
        assert snapshot.timezone == "UTC"
        assert snapshot.services == {"sshd": True, "nginx": True}

    async def test_restore_is_byte_exact(self, state_sync, base_snapshot, runner):
        await state_sync.sync_state(base_snapshot)
        before = state_sync.record_path.read_bytes()
        snapshot = await state_sync.create_snapshot()

        changed = base_snapshot.model_copy(
            update={"system": base_snapshot.system.model_copy(update={"hostname": "other"})}
        )
        await state_sync.sync_state(changed)
        assert state_sync.record_path.read_bytes() != before

        await state_sync.restore_snapshot(snapshot)

        assert state_sync.record_path.read_bytes() == before
        assert ["hostnamectl", "set-hostname", "workstation"] in runner.calls
        assert ["systemctl", "start", "sshd"] in runner.calls

    async def test_restore_without_record_removes_record(self, state_sync, base_snapshot):
        snapshot = await state_sync.create_snapshot()
        await state_sync.sync_state(base_snapshot)

        await state_sync.restore_snapshot(snapshot)

        assert not state_sync.record_path.exists()

    async def test_restore_failure_raises(self, state_sync, base_snapshot, runner):
        await state_sync.sync_state(base_snapshot)
        snapshot = await state_sync.create_snapshot()
        runner.fail("hostnamectl")

        with pytest.raises(StateSyncError):
            await state_sync.restore_snapshot(snapshot)

    async def test_list_and_cleanup(self, state_sync, base_snapshot):
        await state_sync.sync_state(base_snapshot)
        ids = [(await state_sync.create_snapshot()).id for _ in range(3)]

        snapshots = await state_sync.list_snapshots()
        assert [s.id for s in snapshots] == ids
        assert (await state_sync.latest_snapshot()).id == ids[-1]

        removed = await state_sync.cleanup_snapshots(keep=1)
        assert removed == 2
        assert [s.id for s in await state_sync.list_snapshots()] == ids[-1:]

    async def test_check_sync_reports_drift(self, state_sync, base_snapshot, runner):
        await state_sync.sync_state(base_snapshot)
        assert (await state_sync.check_sync(base_snapshot)).in_sync

        runner.on("hostname", stdout="elsewhere\n")
        report = await state_sync.check_sync(base_snapshot)
        assert not report.in_sync
        assert any("hostname" in d for d in report.drift)
