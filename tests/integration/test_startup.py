"""Integration tests for startup recovery and config bootstrap."""

import json

import pytest

from backend.core.startup import bootstrap_from_config, load_bootstrap_config, remount_volumes, startup
from backend.services.backups.executor import INTERRUPTED_MESSAGE
from backend.utils.spawn import SpawnResult

from conftest import set_schedule


MISSING = SpawnResult(exit_code=10, stdout="", stderr="repository does not exist")


class TestLoadBootstrapConfig:
    def test_empty(self):
        assert load_bootstrap_config(None) == []
        assert load_bootstrap_config("  ") == []

    def test_inline_list(self):
        assert load_bootstrap_config('[{"name": "a"}, 3]') == [{"name": "a"}]

    def test_items_object(self):
        assert load_bootstrap_config('{"items": [{"name": "a"}]}') == [{"name": "a"}]

    def test_single_object(self):
        assert load_bootstrap_config('{"name": "a"}') == [{"name": "a"}]

    def test_file_with_env_reference(self, tmp_path, monkeypatch):
        monkeypatch.setenv("NAS_HOST", "192.168.1.10")
        path = tmp_path / "volumes.json"
        path.write_text('[{"name": "nas", "config": {"server": "${NAS_HOST}"}}]')

        assert load_bootstrap_config(str(path)) == [{"name": "nas", "config": {"server": "192.168.1.10"}}]

    def test_unset_variable_becomes_empty(self, monkeypatch):
        monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)

        assert load_bootstrap_config('[{"name": "${NOT_SET_ANYWHERE}x"}]') == [{"name": "x"}]

    def test_invalid_json(self):
        with pytest.raises(ValueError):
            load_bootstrap_config("[{")


class TestBootstrap:
    async def test_creates_missing_entries(self, ctx, fake_spawn, source_dir):
        fake_spawn.responses["snapshots"] = MISSING
        ctx.settings.REPOSITORIES_CONFIG = json.dumps([{"name": "primary", "config": {"backend": "local"}}])
        ctx.settings.VOLUMES_CONFIG = json.dumps(
            [{"name": "data", "config": {"backend": "directory", "path": source_dir}}]
        )

        assert await bootstrap_from_config(ctx) == {"volumes": 1, "repositories": 1}
        assert await bootstrap_from_config(ctx) == {"volumes": 0, "repositories": 0}

        assert [v["name"] for v in await ctx.volumes.list_volumes()] == ["data"]
        assert [r["name"] for r in await ctx.repositories.list_repositories()] == ["primary"]

    async def test_failing_entry_does_not_stop_others(self, ctx, source_dir):
        ctx.settings.VOLUMES_CONFIG = json.dumps(
            [
                {"name": "broken", "config": {"backend": "nfs"}},
                {"name": "data", "config": {"backend": "directory", "path": source_dir}},
            ]
        )

        assert await bootstrap_from_config(ctx) == {"volumes": 1, "repositories": 0}

    async def test_unreadable_config_is_logged(self, ctx, tmp_path):
        ctx.settings.VOLUMES_CONFIG = str(tmp_path / "missing.json")

        assert await bootstrap_from_config(ctx) == {"volumes": 0, "repositories": 0}


class TestStartup:
    async def test_remounts_volumes_lost_on_restart(self, ctx, fake_runner):
        data = await ctx.volumes.create_volume(
            "nas", {"backend": "nfs", "server": "192.168.1.10", "export_path": "/export"}
        )
        fake_runner.remove_mount(data["path"])

        assert await remount_volumes(ctx) == 1
        assert len(fake_runner.commands("mount")) == 2

    async def test_already_mounted_volume_runs_no_command(self, ctx, fake_runner):
        await ctx.volumes.create_volume("nas", {"backend": "nfs", "server": "192.168.1.10", "export_path": "/export"})

        assert await remount_volumes(ctx) == 1
        assert len(fake_runner.commands("mount")) == 1

    async def test_startup_recovers_and_registers_jobs(self, ctx, schedule):
        await set_schedule(ctx, schedule["id"], last_backup_status="in_progress")

        await startup(ctx, start_scheduler=False)

        stored = await ctx.schedules.get_schedule(schedule["id"])
        assert stored["last_backup_status"] == "error"
        assert stored["last_backup_error"] == INTERRUPTED_MESSAGE
        assert len(ctx.scheduler.jobs) == 4
        assert ctx.scheduler.running is False
