"""
Shared pytest fixtures for the volume backup tests.

Provides a fake OS command runner backed by a temporary mount table, a fake
restic spawner, temporary settings and a fully wired application context.
"""

import asyncio
import json
from typing import Dict, List, Optional

import httpx
import pytest
from sqlalchemy import update

from api.settings import Settings
from backend.core.context import build_app_context
from backend.utils.spawn import SpawnResult
from models.sql.backup_automation import BackupSchedule


class FakeRunner:
    """Records OS commands; `mount`/`umount` edit the fake mount table.

    Set `results[command]` to make a command fail.
    """

    def __init__(self, mountinfo_path):
        self.mountinfo_path = mountinfo_path
        self.calls: List[tuple] = []
        self.results: Dict[str, SpawnResult] = {}
        self._next_id = 100

    def commands(self, name: Optional[str] = None) -> List[list]:
        return [args for command, args in self.calls if name is None or command == name]

    def add_mount(self, mount_point: str, fstype: str, source: str = "remote") -> None:
        self._next_id += 1
        line = f"{self._next_id} 1 0:{self._next_id} / {mount_point} rw,relatime - {fstype} {source} rw\n"
        with open(self.mountinfo_path, "a", encoding="utf-8") as handle:
            handle.write(line)

    def remove_mount(self, mount_point: str) -> None:
        with open(self.mountinfo_path, "r", encoding="utf-8") as handle:
            lines = handle.readlines()
        kept = [line for line in lines if line.split()[4] != mount_point]
        with open(self.mountinfo_path, "w", encoding="utf-8") as handle:
            handle.writelines(kept)

    async def __call__(self, command, args, *, env=None, stdin=None, cancel=None):
        args = list(args)
        self.calls.append((command, args))
        result = self.results.get(command, SpawnResult(exit_code=0, stdout="", stderr=""))
        if result.exit_code == 0:
            if command == "mount":
                fstype = args[args.index("-t") + 1] if "-t" in args else "fuse"
                self.add_mount(args[-1], fstype, args[-2])
            elif command == "umount":
                self.remove_mount(args[-1])
        return result


class FakeHandle:
    """Stand-in for `ProcessHandle` returning canned output."""

    def __init__(self, result: SpawnResult, *, cancel=None, block: bool = False, started=None):
        self._result = result
        self._cancel = cancel
        self._block = block
        self._started = started

    async def lines(self):
        if self._started is not None:
            self._started.set()
        if self._block:
            await self._cancel.wait()
            return
        for line in self._result.stdout.splitlines():
            yield line

    async def wait(self) -> SpawnResult:
        if self._block and self._cancel is not None and self._cancel.cancelled:
            return SpawnResult(exit_code=143, stdout="", stderr="terminated")
        return self._result


class FakeSpawn:
    """Fake `spawn` for restic keyed by sub-command (`backup`, `snapshots`, ...).

    Unknown sub-commands succeed with empty output. Sub-commands listed in
    `block` wait until their cancel token fires.
    """

    def __init__(self):
        self.calls: List[dict] = []
        self.responses: Dict[str, SpawnResult] = {}
        self.block = set()
        self.started = asyncio.Event()

    @staticmethod
    def subcommand(args) -> str:
        return args[2] if len(args) > 2 and args[0] == "--repo" else args[0]

    def calls_for(self, subcommand: str) -> List[dict]:
        return [call for call in self.calls if self.subcommand(call["args"]) == subcommand]

    async def __call__(self, command, args, *, env=None, cancel=None, max_stdout_lines=None, stdin=None):
        args = list(args)
        self.calls.append({"command": command, "args": args, "env": dict(env or {})})
        name = self.subcommand(args)
        result = self.responses.get(name, SpawnResult(exit_code=0, stdout="", stderr=""))
        blocking = name in self.block and cancel is not None
        return FakeHandle(result, cancel=cancel, block=blocking, started=self.started if name == "backup" else None)


def backup_summary(snapshot_id: str = "abc123", files: int = 10, size: int = 2048) -> str:
    return "\n".join(
        [
            json.dumps({"message_type": "status", "percent_done": 0.5}),
            json.dumps(
                {
                    "message_type": "summary",
                    "snapshot_id": snapshot_id,
                    "total_files_processed": files,
                    "total_bytes_processed": size,
                }
            ),
        ]
    )


async def set_schedule(ctx, schedule_id, **values):
    """Write schedule columns directly, bypassing the service."""
    async with ctx.db.AsyncSessionLocal() as session:
        await session.execute(update(BackupSchedule).where(BackupSchedule.id == schedule_id).values(**values))
        await session.commit()


@pytest.fixture
def mountinfo_path(tmp_path):
    path = tmp_path / "mountinfo"
    path.write_text("22 1 8:1 / / rw,relatime - ext4 /dev/sda1 rw\n")
    return str(path)


@pytest.fixture
def fake_runner(mountinfo_path):
    return FakeRunner(mountinfo_path)


@pytest.fixture
def fake_spawn():
    return FakeSpawn()


@pytest.fixture
def http_requests():
    """Requests seen by the notification transport."""
    return []


@pytest.fixture
def http_transport(http_requests):
    def handler(request: httpx.Request) -> httpx.Response:
        http_requests.append(request)
        if request.url.host == "api.telegram.org":
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(200, json={})

    return httpx.MockTransport(handler)


@pytest.fixture
def settings(tmp_path, mountinfo_path):
    data = tmp_path / "data"
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{data / 'test.db'}",
        LOG_DIR=str(tmp_path / "logs"),
        VOLUME_MOUNT_BASE=str(data / "volumes"),
        REPOSITORY_BASE=str(data / "repositories"),
        RESTIC_PASS_FILE=str(data / "restic.pass"),
        RESTIC_CACHE_DIR=str(data / "cache"),
        SSH_KEYS_DIR=str(data / "ssh"),
        SECRETS_DIR=str(tmp_path / "secrets"),
        DAVFS_SECRETS_FILE=str(data / "davfs2" / "secrets"),
        MOUNTINFO_PATH=mountinfo_path,
        CONFIG_ENCRYPTION_KEY="test-encryption-key",
        SCHEDULER_ENABLED=False,
        RUN_MIGRATIONS=False,
        PROGRESS_THROTTLE_SECONDS=0,
        VOLUMES_CONFIG=None,
        REPOSITORIES_CONFIG=None,
    )


@pytest.fixture
async def ctx(settings, fake_runner, fake_spawn, http_transport):
    """Application context with an initialized database and fake subprocesses."""

    context = build_app_context(
        settings,
        runner=fake_runner,
        spawn_fn=fake_spawn,
        platform="linux",
        http_transport=http_transport,
    )
    context.restic.ensure_passfile()
    await context.db.initialize()
    yield context
    context.scheduler.stop()
    await context.engine.cancel_all()
    await context.db.close()


@pytest.fixture
def source_dir(tmp_path):
    path = tmp_path / "source"
    path.mkdir()
    (path / "file.txt").write_text("hello")
    return str(path)


@pytest.fixture
async def volume(ctx, source_dir):
    """A mounted directory volume."""

    await ctx.volumes.create_volume("Source Data", {"backend": "directory", "path": source_dir})
    return await ctx.volumes.get_volume_model("source-data")


@pytest.fixture
async def repository(ctx, fake_spawn):
    """A local repository (snapshots probe fails so it gets initialized)."""

    fake_spawn.responses["snapshots"] = SpawnResult(exit_code=10, stdout="", stderr="repository does not exist")
    data = await ctx.repositories.create_repository("primary", {"backend": "local"})
    fake_spawn.responses.pop("snapshots")
    fake_spawn.calls.clear()
    return data


@pytest.fixture
async def schedule(ctx, volume, repository):
    return await ctx.schedules.create_schedule(
        name="nightly",
        volume_id=volume.id,
        repository_id=repository["id"],
        cron_expression="0 3 * * *",
    )
