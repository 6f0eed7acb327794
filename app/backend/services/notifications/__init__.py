"""Backup notifications."""
