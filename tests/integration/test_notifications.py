"""Integration tests for notification destinations and delivery."""

import json

import httpx
import pytest

from backend.core.errors import BadRequestError, ConflictError, NotFoundError
from backend.services.notifications.notification_service import build_notification_message


WEBHOOK = {"type": "webhook", "url": "https://hooks.example.com/backup", "headers": {"X-Token": "abc"}}
TELEGRAM = {"type": "telegram", "bot_token": "123:token", "chat_id": "42"}


class TestMessage:
    def test_success_message(self):
        title, body = build_notification_message(
            "success",
            {
                "volume_name": "data",
                "repository_name": "primary",
                "schedule_name": "nightly",
                "duration": 12.4,
                "files_processed": 10,
                "bytes_processed": 2048,
                "snapshot_id": "abc123",
            },
        )

        assert title == "Backup completed successfully"
        assert body.splitlines()[:7] == [
            "Volume: data",
            "Repository: primary",
            "Schedule: nightly",
            "Duration: 12s",
            "Files: 10",
            "Size: 2.00 KiB",
            "Snapshot: abc123",
        ]
        assert body.splitlines()[-1].startswith("Time: ")

    def test_failure_message_has_error(self):
        title, body = build_notification_message(
            "failure", {"volume_name": "data", "repository_name": "primary", "error": "repo locked"}
        )

        assert title == "Backup failed"
        assert "Error: repo locked" in body
        assert "Files:" not in body

    def test_warning_label(self):
        _, body = build_notification_message(
            "warning", {"volume_name": "data", "repository_name": "primary", "error": "unreadable file"}
        )

        assert "Warning: unreadable file" in body


class TestDestinations:
    async def test_create_masks_secrets(self, ctx):
        data = await ctx.notifications.create_destination("chat", TELEGRAM)

        assert data["type"] == "telegram"
        assert data["config"]["bot_token"] == "********"
        assert data["config"]["chat_id"] == "42"

    async def test_duplicate_name(self, ctx):
        await ctx.notifications.create_destination("ops", WEBHOOK)

        with pytest.raises(ConflictError):
            await ctx.notifications.create_destination("ops", TELEGRAM)

    async def test_invalid_config(self, ctx):
        with pytest.raises(BadRequestError):
            await ctx.notifications.create_destination("ops", {"type": "email"})
        with pytest.raises(BadRequestError):
            await ctx.notifications.create_destination(" ", WEBHOOK)

    async def test_update_and_delete(self, ctx):
        created = await ctx.notifications.create_destination("ops", WEBHOOK)

        updated = await ctx.notifications.update_destination(created["id"], name="alerts", enabled=False)
        assert updated["name"] == "alerts"
        assert updated["enabled"] is False

        await ctx.notifications.delete_destination(created["id"])
        with pytest.raises(NotFoundError):
            await ctx.notifications.get_destination(created["id"])


class TestDelivery:
    async def test_webhook_payload(self, ctx, http_requests):
        created = await ctx.notifications.create_destination("ops", WEBHOOK)

        assert await ctx.notifications.test_destination(created["id"]) == {"success": True}

        request = http_requests[0]
        assert request.method == "POST"
        assert request.headers["X-Token"] == "abc"
        assert json.loads(request.content) == {
            "title": "Test notification",
            "message": "This is a test notification.",
        }

    async def test_telegram_uses_resolved_token(self, ctx, http_requests):
        created = await ctx.notifications.create_destination("chat", TELEGRAM)

        assert await ctx.notifications.test_destination(created["id"]) == {"success": True}

        request = http_requests[0]
        assert request.url.path == "/bot123:token/sendMessage"
        assert json.loads(request.content)["chat_id"] == "42"

    async def test_telegram_api_error(self, ctx):
        ctx.notifications.transport = httpx.MockTransport(
            lambda request: httpx.Response(200, json={"ok": False, "description": "chat not found"})
        )
        created = await ctx.notifications.create_destination("chat", TELEGRAM)

        result = await ctx.notifications.test_destination(created["id"])

        assert result == {"success": False, "error": "Telegram API error: chat not found"}

    async def test_send_never_raises(self, ctx, schedule, http_requests):
        calls = []

        def handler(request):
            calls.append(request)
            if request.url.host == "broken.example.com":
                return httpx.Response(500)
            return httpx.Response(200, json={})

        ctx.notifications.transport = httpx.MockTransport(handler)
        broken = await ctx.notifications.create_destination(
            "broken", {"type": "webhook", "url": "https://broken.example.com/hook"}
        )
        working = await ctx.notifications.create_destination("ops", WEBHOOK)
        await ctx.schedules.update_notifications(
            schedule["id"],
            [
                {"destination_id": broken["id"], "notify_on_failure": True},
                {"destination_id": working["id"], "notify_on_failure": True},
            ],
        )

        await ctx.notifications.send_backup_notification(
            schedule["id"], "failure", {"volume_name": "data", "repository_name": "primary", "error": "boom"}
        )

        assert sorted(request.url.host for request in calls) == ["broken.example.com", "hooks.example.com"]

    async def test_disabled_destination_is_skipped(self, ctx, schedule, http_requests):
        created = await ctx.notifications.create_destination("ops", WEBHOOK, enabled=False)
        await ctx.schedules.update_notifications(
            schedule["id"], [{"destination_id": created["id"], "notify_on_failure": True}]
        )

        await ctx.notifications.send_backup_notification(schedule["id"], "failure", {"volume_name": "data"})

        assert http_requests == []

    async def test_unknown_event(self, ctx, schedule, http_requests):
        await ctx.notifications.send_backup_notification(schedule["id"], "exploded", {})

        assert http_requests == []
