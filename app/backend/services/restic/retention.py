"""Retention policies for schedule snapshots.

A schedule stores its policy as a JSON dict on `BackupSchedule.retention_policy`.
Retention is applied by restic itself (`forget --prune`); this module only
parses the stored dict and turns it into `forget` arguments.

Policies may name a `profile` ("low", "medium", "high") whose tier defaults
fill in any keep-* value that is not set explicitly.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional


_DURATION_PATTERN = re.compile(r"^(\d+y)?(\d+m)?(\d+d)?(\d+h)?$")

PROFILES: Dict[str, Dict[str, int]] = {
    "low": {"keep_daily": 1, "keep_weekly": 1, "keep_monthly": 3, "keep_yearly": 1},
    "medium": {"keep_daily": 7, "keep_weekly": 4, "keep_monthly": 12, "keep_yearly": 3},
    "high": {"keep_daily": 14, "keep_weekly": 8, "keep_monthly": 24, "keep_yearly": 5},
}


@dataclass
class RetentionPolicy:
    """Snapshot retention policy.

    Attributes:
        keep_last: Keep the newest N snapshots.
        keep_hourly: Keep the last snapshot of each of the last N hours.
        keep_daily: Keep one snapshot per day for N days.
        keep_weekly: Keep one snapshot per week for N weeks.
        keep_monthly: Keep one snapshot per month for N months.
        keep_yearly: Keep one snapshot per year for N years.
        keep_within_duration: Keep everything newer than this restic duration (e.g. "30d", "1y6m").
        profile: Optional preset supplying tier defaults.
    """

    keep_last: Optional[int] = None
    keep_hourly: Optional[int] = None
    keep_daily: Optional[int] = None
    keep_weekly: Optional[int] = None
    keep_monthly: Optional[int] = None
    keep_yearly: Optional[int] = None
    keep_within_duration: Optional[str] = None
    profile: Optional[str] = None

    def is_empty(self) -> bool:
        return not self.to_restic_args()

    def effective(self) -> "RetentionPolicy":
        """Return the policy with profile defaults applied."""

        if not self.profile:
            return self
        defaults = PROFILES.get(self.profile)
        if defaults is None:
            raise ValueError(f"Unknown retention profile: {self.profile}")
        data = asdict(self)
        for key, value in defaults.items():
            if data.get(key) is None:
                data[key] = value
        return RetentionPolicy(**data)

    def to_restic_args(self) -> List[str]:
        policy = self.effective()
        args: List[str] = []
        for flag, value in (
            ("--keep-last", policy.keep_last),
            ("--keep-hourly", policy.keep_hourly),
            ("--keep-daily", policy.keep_daily),
            ("--keep-weekly", policy.keep_weekly),
            ("--keep-monthly", policy.keep_monthly),
            ("--keep-yearly", policy.keep_yearly),
        ):
            if value:
                args.extend([flag, str(value)])
        if policy.keep_within_duration:
            args.extend(["--keep-within-duration", policy.keep_within_duration])
        return args

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


def _to_int_or_none(value: Any) -> Optional[int]:
    """Convert value to a non-negative int or None.

    Raises:
        ValueError: If conversion fails or the value is negative.
    """

    if value is None or value == "":
        return None
    number = int(value)
    if number < 0:
        raise ValueError(f"Retention values must be >= 0 (got {value!r})")
    return number


def retention_from_dict(data: Optional[Dict[str, Any]]) -> Optional[RetentionPolicy]:
    """Build a RetentionPolicy from an untrusted dictionary.

    Args:
        data: Raw retention dict (None means "no retention").

    Returns:
        Optional[RetentionPolicy]: Parsed policy, or None when nothing is configured.

    Raises:
        ValueError: On malformed values.
    """

    if not data:
        return None

    within = data.get("keep_within_duration") or None
    if within is not None:
        within = str(within).strip()
        if not within or not _DURATION_PATTERN.match(within):
            raise ValueError(f"Invalid keep_within_duration: {data.get('keep_within_duration')!r}")

    policy = RetentionPolicy(
        keep_last=_to_int_or_none(data.get("keep_last")),
        keep_hourly=_to_int_or_none(data.get("keep_hourly")),
        keep_daily=_to_int_or_none(data.get("keep_daily")),
        keep_weekly=_to_int_or_none(data.get("keep_weekly")),
        keep_monthly=_to_int_or_none(data.get("keep_monthly")),
        keep_yearly=_to_int_or_none(data.get("keep_yearly")),
        keep_within_duration=within,
        profile=data.get("profile") or None,
    )
    policy.effective()
    return None if policy.is_empty() else policy
