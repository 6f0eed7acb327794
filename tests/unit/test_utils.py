"""Unit tests for subprocess, timeout, id and mount table helpers."""

import asyncio
import sys

import pytest

from backend.core.errors import OperationTimeoutError
from backend.utils.ids import generate_short_id, is_valid_short_id, slugify
from backend.utils.mountinfo import (
    get_mount_for_path,
    list_mount_points_under,
    parse_mountinfo,
)
from backend.utils.spawn import CancelToken, run_command, spawn
from backend.utils.timeout import with_timeout


MOUNTINFO = """\
22 1 8:1 / / rw,relatime shared:1 - ext4 /dev/sda1 rw
40 22 0:35 / /var/lib/volume-backup/volumes rw,relatime shared:2 - tmpfs tmpfs rw
41 40 0:36 / /var/lib/volume-backup/volumes/nas rw,relatime shared:3 - nfs4 192.168.1.10:/export rw
42 40 0:37 / /var/lib/volume-backup/volumes/my\\040share rw,relatime shared:4 - cifs //host/share rw
garbage line without separator
"""


class TestSpawn:
    async def test_run_command_collects_output(self):
        result = await run_command(sys.executable, ["-c", "import sys; print('out'); print('err', file=sys.stderr)"])

        assert result.exit_code == 0
        assert result.stdout == "out"
        assert result.stderr.strip() == "err"

    async def test_lines_streams_stdout(self):
        handle = await spawn(sys.executable, ["-c", "print('a'); print('b')"])

        lines = [line async for line in handle.lines()]
        result = await handle.wait()

        assert lines == ["a", "b"]
        assert result.stdout == "a\nb"

    async def test_stdin_is_forwarded(self):
        result = await run_command(sys.executable, ["-c", "import sys; print(sys.stdin.read().upper())"], stdin="hi")

        assert result.stdout == "HI"

    async def test_env_is_layered(self):
        result = await run_command(
            sys.executable, ["-c", "import os; print(os.environ['VB_TEST'])"], env={"VB_TEST": "yes"}
        )

        assert result.stdout == "yes"

    async def test_non_zero_exit_code(self):
        result = await run_command(sys.executable, ["-c", "raise SystemExit(3)"])

        assert result.exit_code == 3

    async def test_cancel_token_terminates_child(self):
        token = CancelToken()
        handle = await spawn(sys.executable, ["-c", "import time; time.sleep(30)"], cancel=token)

        token.cancel()
        result = await asyncio.wait_for(handle.wait(), 10)

        assert token.cancelled is True
        assert result.exit_code != 0

    async def test_cancelled_reader_kills_child(self):
        handle = await spawn(
            sys.executable, ["-c", "import time; print('ready', flush=True); time.sleep(30)"]
        )
        first_line = asyncio.Event()

        async def consume():
            async for _ in handle.lines():
                first_line.set()

        task = asyncio.ensure_future(consume())
        await asyncio.wait_for(first_line.wait(), 10)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await asyncio.wait_for(handle._process.wait(), 10) != 0

    async def test_max_stdout_lines_keeps_tail(self):
        handle = await spawn(sys.executable, ["-c", "for i in range(5): print(i)"], max_stdout_lines=2)

        result = await handle.wait()

        assert result.stdout == "3\n4"

    async def test_missing_executable_raises(self):
        with pytest.raises(OSError):
            await spawn("definitely-not-a-real-binary-xyz", [])


class TestTimeout:
    async def test_returns_value(self):
        async def quick():
            return 42

        assert await with_timeout(quick(), 1, "quick") == 42

    async def test_raises_operation_timeout(self):
        with pytest.raises(OperationTimeoutError) as exc_info:
            await with_timeout(asyncio.sleep(5), 0.01, "mount nas")

        assert exc_info.value.operation == "mount nas"
        assert "timed out" in str(exc_info.value)


class TestIds:
    def test_generated_short_ids_are_valid(self):
        ids = {generate_short_id() for _ in range(50)}

        assert len(ids) == 50
        assert all(is_valid_short_id(i) for i in ids)

    def test_invalid_short_ids(self):
        assert is_valid_short_id("short") is False
        assert is_valid_short_id("has space") is False
        assert is_valid_short_id("") is False

    def test_slugify(self):
        assert slugify("My NAS Share") == "my-nas-share"
        assert slugify("  Über--Backup! ") == "uber-backup"


class TestMountinfo:
    def test_parse_skips_malformed_lines(self):
        entries = parse_mountinfo(MOUNTINFO)

        assert len(entries) == 4
        assert entries[2].fstype == "nfs4"
        assert entries[2].source == "192.168.1.10:/export"

    def test_parse_unescapes_octal(self):
        entries = parse_mountinfo(MOUNTINFO)

        assert entries[3].mount_point == "/var/lib/volume-backup/volumes/my share"

    def test_longest_mount_point_wins(self, tmp_path):
        path = tmp_path / "mountinfo"
        path.write_text(MOUNTINFO)

        entry = get_mount_for_path("/var/lib/volume-backup/volumes/nas/sub", str(path))
        assert entry.fstype == "nfs4"

        entry = get_mount_for_path("/var/lib/volume-backup/volumes/other", str(path))
        assert entry.fstype == "tmpfs"

    def test_mount_points_under_base(self, tmp_path):
        path = tmp_path / "mountinfo"
        path.write_text(MOUNTINFO)

        points = [e.mount_point for e in list_mount_points_under("/var/lib/volume-backup/volumes", str(path))]

        assert points == [
            "/var/lib/volume-backup/volumes/nas",
            "/var/lib/volume-backup/volumes/my share",
        ]

    def test_missing_table_is_empty(self, tmp_path):
        assert get_mount_for_path("/x", str(tmp_path / "missing")) is None
