"""Applied-configuration record and pre-update snapshots."""

import asyncio
import json
import logging
import shutil
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from horizon.errors import StateSyncError
from horizon.models.snapshot import ConfigSnapshot
from horizon.utils.atomic import atomic_write_bytes, atomic_write_json, atomic_write_text
from horizon.utils.process import CommandRunner


logger = logging.getLogger(__name__)

RECORD_FILE = "applied-config.json"
HOST_FILE = "host.json"
SNAPSHOT_PREFIX = "snapshot-"
DEFAULT_KEEP_SNAPSHOTS = 10


class SystemSnapshot(BaseModel):
    """Point-in-time copy of the applied record plus host state."""
    id: str
    timestamp: datetime = Field(default_factory=datetime.now)
    path: str
    record: Optional[bytes] = Field(default=None, description="Exact record bytes, None if absent")
    hostname: Optional[str] = None
    timezone: Optional[str] = None
    services: Dict[str, bool] = Field(default_factory=dict)

    def summary(self) -> dict:
        """JSON-safe view without the raw record."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "path": self.path,
            "has_record": self.record is not None,
            "hostname": self.hostname,
            "timezone": self.timezone,
            "services": dict(self.services),
        }


class SyncReport(BaseModel):
    """Drift between a configuration and the live host."""
    in_sync: bool
    drift: List[str] = Field(default_factory=list)


class StateSyncManager:
    """Owns the applied-configuration record and its snapshots.

    The record is the "current state" input of the next reconciliation. It
    is only ever replaced atomically, and a snapshot keeps its exact bytes
    so a rollback restores it byte for byte.
    """

    def __init__(self, state_dir: Path, runner: Optional[CommandRunner] = None):
        self.state_dir = Path(state_dir)
        self.record_path = self.state_dir / RECORD_FILE
        self.snapshots_dir = self.state_dir / "snapshots"
        self.runner = runner or CommandRunner()

    async def load_current(self) -> Optional[ConfigSnapshot]:
        """Load the last applied configuration, or None if nothing was applied yet."""
        raw = await asyncio.to_thread(self._read_record)
        if raw is None:
            return None
        try:
            return ConfigSnapshot.model_validate_json(raw)
        except ValidationError as e:
            raise StateSyncError(f"Corrupt applied configuration record {self.record_path}: {e}") from e

    async def sync_state(self, desired: ConfigSnapshot):
        """Record ``desired`` as the applied configuration."""
        content = desired.model_dump_json(indent=2)
        try:
            await asyncio.to_thread(atomic_write_text, self.record_path, content + "\n")
        except OSError as e:
            raise StateSyncError(f"Failed to write {self.record_path}: {e}") from e
        logger.info(f"Synchronised applied configuration to {self.record_path}")

    async def create_snapshot(self) -> SystemSnapshot:
        """Capture the record and the host settings it controls."""
        record = await asyncio.to_thread(self._read_record)
        services: List[str] = []
        if record is not None:
            try:
                current = ConfigSnapshot.model_validate_json(record)
                services = [s.name for s in current.services]
            except ValidationError as e:
                logger.warning(f"Snapshotting unreadable record as-is: {e}")

        now = datetime.now()
        snapshot_id = now.strftime("%Y%m%d-%H%M%S-%f")
        path = self.snapshots_dir / f"{SNAPSHOT_PREFIX}{snapshot_id}"

        snapshot = SystemSnapshot(
            id=snapshot_id,
            timestamp=now,
            path=str(path),
            record=record,
            hostname=await self._probe(["hostname"]),
            timezone=await self._probe(["timedatectl", "show", "-p", "Timezone", "--value"]),
            services={name: await self._service_active(name) for name in services},
        )

        try:
            await asyncio.to_thread(self._write_snapshot, snapshot)
        except OSError as e:
            raise StateSyncError(f"Failed to write snapshot {path}: {e}") from e

        logger.info(f"Created snapshot {snapshot_id}")
        return snapshot

    async def restore_snapshot(self, snapshot: SystemSnapshot):
        """Restore the record exactly and reapply host settings."""
        logger.info(f"Restoring snapshot {snapshot.id}")
        try:
            if snapshot.record is None:
                await asyncio.to_thread(self.record_path.unlink, True)
            else:
                await asyncio.to_thread(atomic_write_bytes, self.record_path, snapshot.record)
        except OSError as e:
            raise StateSyncError(f"Failed to restore {self.record_path}: {e}") from e

        try:
            if snapshot.hostname:
                await self.runner.check(["hostnamectl", "set-hostname", snapshot.hostname])
            if snapshot.timezone:
                await self.runner.check(["timedatectl", "set-timezone", snapshot.timezone])
            for name, active in snapshot.services.items():
                await self.runner.check(["systemctl", "start" if active else "stop", name])
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            raise StateSyncError(f"Failed to reapply host state from snapshot {snapshot.id}: {e}") from e

        logger.info(f"Restored snapshot {snapshot.id}")

    async def list_snapshots(self) -> List[SystemSnapshot]:
        """Snapshots on disk, oldest first."""
        return await asyncio.to_thread(self._scan_snapshots)

    async def latest_snapshot(self) -> Optional[SystemSnapshot]:
        snapshots = await self.list_snapshots()
        return snapshots[-1] if snapshots else None

    async def cleanup_snapshots(self, keep: int = DEFAULT_KEEP_SNAPSHOTS) -> int:
        """Delete all but the newest ``keep`` snapshots. Returns the number removed."""
        snapshots = await self.list_snapshots()
        stale = snapshots[:-keep] if keep > 0 else snapshots
        for snapshot in stale:
            await asyncio.to_thread(shutil.rmtree, snapshot.path, True)
            logger.debug(f"Removed snapshot {snapshot.id}")
        return len(stale)

    async def check_sync(self, config: ConfigSnapshot) -> SyncReport:
        """Compare ``config`` with the record and the live host."""
        drift = []

        current = await self.load_current()
        if current is None:
            drift.append("no configuration has been applied")
        elif current != config:
            drift.append("applied configuration differs from the given configuration")

        hostname = await self._probe(["hostname"])
        if hostname is not None and hostname != config.system.hostname:
            drift.append(f"hostname is '{hostname}', expected '{config.system.hostname}'")

        timezone = await self._probe(["timedatectl", "show", "-p", "Timezone", "--value"])
        if timezone is not None and timezone != config.system.timezone:
            drift.append(f"timezone is '{timezone}', expected '{config.system.timezone}'")

        for service in config.services:
            active = await self._service_active(service.name)
            if active != service.enabled:
                state = "active" if active else "inactive"
                drift.append(f"service {service.name} is {state}")

        return SyncReport(in_sync=not drift, drift=drift)

    def _read_record(self) -> Optional[bytes]:
        try:
            return self.record_path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StateSyncError(f"Failed to read {self.record_path}: {e}") from e

    def _write_snapshot(self, snapshot: SystemSnapshot):
        path = Path(snapshot.path)
        path.mkdir(parents=True, exist_ok=True)
        if snapshot.record is not None:
            atomic_write_bytes(path / RECORD_FILE, snapshot.record)
        atomic_write_json(path / HOST_FILE, {
            "id": snapshot.id,
            "timestamp": snapshot.timestamp.isoformat(),
            "hostname": snapshot.hostname,
            "timezone": snapshot.timezone,
            "services": snapshot.services,
        })

    def _scan_snapshots(self) -> List[SystemSnapshot]:
        if not self.snapshots_dir.exists():
            return []

        snapshots = []
        for path in sorted(self.snapshots_dir.glob(f"{SNAPSHOT_PREFIX}*")):
            host_file = path / HOST_FILE
            if not host_file.exists():
                logger.warning(f"Ignoring incomplete snapshot {path}")
                continue
            try:
                host = json.loads(host_file.read_text())
            except (OSError, ValueError) as e:
                logger.warning(f"Ignoring unreadable snapshot {path}: {e}")
                continue
            record_file = path / RECORD_FILE
            snapshots.append(SystemSnapshot(
                id=host["id"],
                timestamp=datetime.fromisoformat(host["timestamp"]),
                path=str(path),
                record=record_file.read_bytes() if record_file.exists() else None,
                hostname=host.get("hostname"),
                timezone=host.get("timezone"),
                services=host.get("services", {}),
            ))
        return snapshots

    async def _probe(self, args: List[str]) -> Optional[str]:
        """Read one value from the host, None if it cannot be read."""
        try:
            result = await self.runner.run(args)
        except subprocess.TimeoutExpired:
            logger.warning(f"Timed out reading host state: {' '.join(args)}")
            return None
        if not result.ok:
            return None
        return result.stdout.strip() or None

    async def _service_active(self, name: str) -> bool:
        try:
            result = await self.runner.run(["systemctl", "is-active", name])
        except subprocess.TimeoutExpired:
            return False
        return result.stdout.strip() == "active"
