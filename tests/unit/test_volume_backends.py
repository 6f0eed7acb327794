"""Unit tests for the volume mount backends."""

import os

import pytest

from backend.services.secrets import SecretResolver
from backend.services.volumes.backends import (
    ERROR,
    MOUNTED,
    UNMOUNTED,
    VOLUME_BACKENDS,
    BackendRuntime,
    build_volume_backend,
    get_volume_path,
)
from backend.services.volumes.backends.nfs import NfsBackend
from backend.services.volumes.backends.sftp import SftpBackend
from backend.services.volumes.backends.smb import SmbBackend
from backend.services.volumes.backends.webdav import WebdavBackend
from backend.utils.spawn import SpawnResult
from models.configs import (
    DirectoryConfig,
    NfsConfig,
    RcloneVolumeConfig,
    SftpVolumeConfig,
    SmbConfig,
    WebdavConfig,
)


@pytest.fixture
def secrets(tmp_path):
    return SecretResolver(lambda: "test-encryption-key", secrets_dir=str(tmp_path))


@pytest.fixture
def runtime(secrets, fake_runner, mountinfo_path, tmp_path):
    return BackendRuntime(
        secrets=secrets,
        runner=fake_runner,
        operation_timeout=2.0,
        mountinfo_path=mountinfo_path,
        ssh_keys_dir=str(tmp_path / "ssh"),
        davfs_secrets_file=str(tmp_path / "davfs2" / "secrets"),
        platform="linux",
    )


@pytest.fixture
def mount_path(tmp_path):
    return str(tmp_path / "volumes" / "abcd1234" / "_data")


def nfs(runtime, path, **overrides):
    config = NfsConfig(server="192.168.1.10", export_path="/export/data", **overrides)
    return NfsBackend(config, path, runtime, key_name="abcd1234")


class TestRegistry:
    def test_every_backend_is_registered(self):
        assert set(VOLUME_BACKENDS) == {"directory", "nfs", "smb", "webdav", "rclone", "sftp"}

    def test_build_from_row(self, runtime, tmp_path):
        class Row:
            short_id = "abcd1234"
            config = {"backend": "smb", "server": "nas", "share": "data"}

        backend = build_volume_backend(Row(), runtime, mount_base=str(tmp_path))

        assert isinstance(backend, SmbBackend)
        assert backend.path == os.path.join(str(tmp_path), "abcd1234", "_data")

    def test_directory_path_is_config_path(self, tmp_path):
        class Row:
            short_id = "abcd1234"
            config = {"backend": "directory", "path": "/srv/data"}

        assert get_volume_path(Row(), str(tmp_path)) == "/srv/data"


class TestMountLifecycle:
    """Idempotence, unmount and health via the fake mount table."""

    async def test_non_linux_host_has_no_side_effects(self, runtime, mount_path, fake_runner):
        runtime.platform = "darwin"
        backend = nfs(runtime, mount_path)

        mount = await backend.mount()
        unmount = await backend.unmount()

        assert mount.status == ERROR
        assert "only supported on Linux" in mount.error
        assert unmount.status == ERROR
        assert fake_runner.calls == []
        assert not os.path.exists(mount_path)

    async def test_mount_runs_command_once(self, runtime, mount_path, fake_runner):
        backend = nfs(runtime, mount_path)

        first = await backend.mount()
        second = await backend.mount()

        assert first.status == MOUNTED
        assert second.status == MOUNTED
        assert len(fake_runner.commands("mount")) == 1

    async def test_health_reads_mount_table(self, runtime, mount_path, fake_runner):
        backend = nfs(runtime, mount_path)

        assert (await backend.check_health()).status == ERROR

        await backend.mount()
        assert (await backend.check_health()).status == MOUNTED

        fake_runner.remove_mount(mount_path)
        health = await backend.check_health()
        assert health.status == ERROR
        assert health.error == "Volume is not mounted"

    async def test_wrong_fstype_is_unhealthy(self, runtime, mount_path, fake_runner):
        os.makedirs(mount_path)
        fake_runner.add_mount(mount_path, "cifs")

        health = await nfs(runtime, mount_path).check_health()

        assert health.status == ERROR
        assert "found cifs" in health.error

    async def test_broken_mount_is_unmounted_before_remount(self, runtime, mount_path, fake_runner):
        os.makedirs(mount_path)
        fake_runner.add_mount(mount_path, "cifs")

        result = await nfs(runtime, mount_path).mount()

        assert result.status == MOUNTED
        assert [command for command, _ in fake_runner.calls] == ["umount", "mount"]

    async def test_unmount_skips_non_mount_points(self, runtime, mount_path, fake_runner):
        os.makedirs(mount_path)

        result = await nfs(runtime, mount_path).unmount()

        assert result.status == UNMOUNTED
        assert fake_runner.commands("umount") == []
        assert not os.path.exists(mount_path)

    async def test_unmount_is_lazy(self, runtime, mount_path, fake_runner):
        backend = nfs(runtime, mount_path)
        await backend.mount()

        result = await backend.unmount()

        assert result.status == UNMOUNTED
        assert fake_runner.commands("umount") == [["-l", mount_path]]

    async def test_mount_failure_is_classified(self, runtime, mount_path, fake_runner):
        fake_runner.results["mount"] = SpawnResult(exit_code=32, stdout="", stderr="mount error(13): Permission denied")
        backend = SmbBackend(SmbConfig(server="nas", share="data", password="x"), mount_path, runtime)

        result = await backend.mount()

        assert result.status == ERROR
        assert result.error == "Authentication failed. Please check your username and password."

    async def test_nfs_retries_with_internal_helper(self, runtime, mount_path, fake_runner):
        fake_runner.results["mount"] = SpawnResult(exit_code=32, stdout="", stderr="mount.nfs: access denied")

        result = await nfs(runtime, mount_path).mount()

        assert result.status == ERROR
        mounts = fake_runner.commands("mount")
        assert len(mounts) == 2
        assert mounts[1][0] == "-i"

    async def test_already_mounted_counts_as_success(self, runtime, mount_path, fake_runner):
        fake_runner.results["mount"] = SpawnResult(exit_code=32, stdout="", stderr="mount: already mounted")
        backend = SmbBackend(SmbConfig(server="nas", share="data"), mount_path, runtime)

        assert (await backend.mount()).status == MOUNTED


class TestDirectoryBackend:
    async def test_existing_directory_is_mounted(self, runtime, tmp_path, fake_runner):
        backend = build_volume_backend(
            type("Row", (), {"short_id": "dir00001", "config": DirectoryConfig(path=str(tmp_path))})(),
            runtime,
            mount_base="/unused",
        )

        assert (await backend.mount()).status == MOUNTED
        assert (await backend.check_health()).status == MOUNTED
        assert (await backend.unmount()).status == UNMOUNTED
        assert fake_runner.calls == []

    async def test_missing_directory(self, runtime, tmp_path):
        config = DirectoryConfig(path=str(tmp_path / "missing"))
        backend = VOLUME_BACKENDS["directory"](config, config.path, runtime)

        result = await backend.mount()

        assert result.status == ERROR
        assert "does not exist" in result.error


class TestMountArguments:
    def test_nfs_v3_adds_nolock(self, runtime, mount_path):
        args = nfs(runtime, mount_path, version="3", read_only=True).build_mount_args()

        assert args[:2] == ["-t", "nfs"]
        assert args[3] == "vers=3,port=2049,nolock,ro"
        assert args[4:] == ["192.168.1.10:/export/data", mount_path]

    def test_smb_resolves_sealed_password(self, runtime, secrets, mount_path):
        config = SmbConfig(server="nas", share="data", username="bob", password=secrets.seal_secret("hunter2"))

        args = SmbBackend(config, mount_path, runtime).build_mount_args()

        assert "password=hunter2" in args[3]
        assert "username=bob" in args[3]
        assert args[4] == "//nas/data"

    def test_webdav_source_url(self, runtime, mount_path):
        config = WebdavConfig(server="dav.example.com", path="remote.php/dav", port=8443, ssl=True)

        assert WebdavBackend(config, mount_path, runtime).source == "https://dav.example.com:8443/remote.php/dav"

    async def test_webdav_writes_credentials(self, runtime, mount_path):
        config = WebdavConfig(server="dav.example.com", username="bob", password="hunter2")

        await WebdavBackend(config, mount_path, runtime).mount()

        content = open(runtime.davfs_secrets_file, encoding="utf-8").read()
        assert content == "http://dav.example.com/ bob hunter2\n"
        assert oct(os.stat(runtime.davfs_secrets_file).st_mode & 0o777) == "0o600"

    async def test_rclone_daemon_mount(self, runtime, mount_path, fake_runner):
        config = RcloneVolumeConfig(remote="gdrive", path="backups", read_only=True)

        await build_volume_backend(
            type("Row", (), {"short_id": "rcl00001", "config": config})(), runtime, mount_base="/unused", path=mount_path
        ).mount()

        command, args = fake_runner.calls[-1]
        assert command == "rclone"
        assert args[:4] == ["mount", "gdrive:backups", mount_path, "--daemon"]
        assert "--read-only" in args

    async def test_sftp_key_written_and_removed(self, runtime, mount_path, fake_runner):
        config = SftpVolumeConfig(host="sftp.example.com", username="bob", private_key="KEY", password="pw")
        backend = SftpBackend(config, mount_path, runtime, key_name="sftp0001")

        await backend.mount()

        command, args = fake_runner.calls[-1]
        assert command == "sshfs"
        assert args[0] == "bob@sftp.example.com:"
        assert "password_stdin" in args
        assert f"IdentityFile={backend.private_key_path}" in args[3]
        assert open(backend.private_key_path, encoding="utf-8").read() == "KEY\n"

        await backend.unmount()
        assert not os.path.exists(backend.private_key_path)

    async def test_sftp_key_removed_when_mount_fails(self, runtime, mount_path, fake_runner):
        fake_runner.results["sshfs"] = SpawnResult(exit_code=1, stdout="", stderr="read: Connection refused")
        config = SftpVolumeConfig(
            host="sftp.example.com", username="bob", private_key="KEY", known_hosts="host key", skip_host_key_check=False
        )
        backend = SftpBackend(config, mount_path, runtime, key_name="sftp0001")

        result = await backend.mount()

        assert result.status == ERROR
        assert not os.path.exists(backend.private_key_path)
        assert not os.path.exists(backend.known_hosts_path)

    async def test_sftp_health(self, runtime, mount_path, fake_runner):
        backend = SftpBackend(SftpVolumeConfig(host="sftp.example.com", username="bob"), mount_path, runtime)

        assert (await backend.check_health()).status == UNMOUNTED

        os.makedirs(mount_path)
        fake_runner.add_mount(mount_path, "nfs4")
        assert (await backend.check_health()).status == ERROR

        fake_runner.remove_mount(mount_path)
        fake_runner.add_mount(mount_path, "fuse.sshfs")
        assert (await backend.check_health()).status == MOUNTED

    async def test_webdav_credentials_removed_on_unmount(self, runtime, mount_path):
        os.makedirs(os.path.dirname(runtime.davfs_secrets_file))
        with open(runtime.davfs_secrets_file, "w", encoding="utf-8") as handle:
            handle.write("https://other.example.com/ alice secret\n")
        backend = WebdavBackend(
            WebdavConfig(server="dav.example.com", username="bob", password="hunter2"), mount_path, runtime
        )

        for _ in range(3):
            assert (await backend.mount()).status == MOUNTED
            assert (await backend.unmount()).status == UNMOUNTED

        content = open(runtime.davfs_secrets_file, encoding="utf-8").read()
        assert content == "https://other.example.com/ alice secret\n"

    def test_webdav_credentials_replace_existing_line(self, runtime, mount_path):
        backend = WebdavBackend(
            WebdavConfig(server="dav.example.com", username="bob", password="hunter2"), mount_path, runtime
        )

        backend._store_credentials()
        backend._store_credentials()

        content = open(runtime.davfs_secrets_file, encoding="utf-8").read()
        assert content == "http://dav.example.com/ bob hunter2\n"

    async def test_webdav_credentials_removed_when_mount_fails(self, runtime, mount_path, fake_runner):
        fake_runner.results["mount"] = SpawnResult(exit_code=32, stdout="", stderr="mount error(13): Permission denied")
        backend = WebdavBackend(
            WebdavConfig(server="dav.example.com", username="bob", password="hunter2"), mount_path, runtime
        )

        assert (await backend.mount()).status == ERROR
        assert open(runtime.davfs_secrets_file, encoding="utf-8").read() == ""
