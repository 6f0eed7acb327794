"""Helpers for reading the kernel mount table (`/proc/self/mountinfo`).

The table is re-read on every call; nothing is cached.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import List, Optional


logger = logging.getLogger(__name__)

DEFAULT_MOUNTINFO_PATH = "/proc/self/mountinfo"

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


@dataclass(frozen=True)
class MountEntry:
    mount_point: str
    fstype: str
    source: str


def _unescape(value: str) -> str:
    # mountinfo escapes space, tab, newline and backslash as \ooo
    return _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), value)


def parse_mountinfo(content: str) -> List[MountEntry]:
    """Parse mountinfo content into entries.

    Lines look like:
        36 35 98:0 /mnt1 /mnt2 rw,noatime master:1 - ext3 /dev/root rw,errors=continue

    Malformed lines are skipped.
    """

    entries: List[MountEntry] = []
    for line in content.splitlines():
        if not line.strip():
            continue
        left, sep, right = line.partition(" - ")
        if not sep:
            continue
        left_fields = left.split()
        right_fields = right.split()
        if len(left_fields) < 5 or not right_fields:
            continue
        entries.append(
            MountEntry(
                mount_point=_unescape(left_fields[4]),
                fstype=right_fields[0],
                source=_unescape(right_fields[1]) if len(right_fields) > 1 else "",
            )
        )
    return entries


def read_mountinfo(mountinfo_path: str = DEFAULT_MOUNTINFO_PATH) -> List[MountEntry]:
    try:
        with open(mountinfo_path, "r", encoding="utf-8", errors="replace") as handle:
            return parse_mountinfo(handle.read())
    except OSError as exc:
        logger.warning("Could not read mount table %s: %s", mountinfo_path, exc)
        return []


def _contains(mount_point: str, path: str) -> bool:
    if mount_point == "/":
        return path.startswith("/")
    return path == mount_point or path.startswith(mount_point.rstrip("/") + "/")


def get_mount_for_path(path: str, mountinfo_path: str = DEFAULT_MOUNTINFO_PATH) -> Optional[MountEntry]:
    """Return the mount with the longest mount point containing `path`.

    When the same mount point appears several times (stacked mounts) the last
    one, which is the visible one, wins.
    """

    target = os.path.normpath(path)
    best: Optional[MountEntry] = None
    for entry in read_mountinfo(mountinfo_path):
        if not _contains(entry.mount_point, target):
            continue
        if best is None or len(entry.mount_point) >= len(best.mount_point):
            best = entry
    return best


def list_mount_points_under(base: str, mountinfo_path: str = DEFAULT_MOUNTINFO_PATH) -> List[MountEntry]:
    """Return every mount whose mount point lies strictly below `base`."""

    root = os.path.normpath(base)
    return [
        entry
        for entry in read_mountinfo(mountinfo_path)
        if entry.mount_point != root and _contains(root, entry.mount_point)
    ]
