"""Backup schedules and their execution.

This package provides:
- Cron timing helpers for schedules
- Mirror compatibility checks between repositories
- Schedule, mirror and notification assignment management
- The execution engine that runs backups and copies snapshots to mirrors
"""
