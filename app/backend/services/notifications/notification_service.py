"""Notification service for backup events.

Destinations are either a generic JSON webhook or a Telegram chat. Each
schedule assigns destinations with per-event flags (start, success, warning,
failure). Delivery failures are logged and never propagate to the caller.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
from pydantic import ValidationError
from sqlalchemy import delete, select, update

from backend.core.errors import BadRequestError, ConflictError, NotFoundError, ServiceError, to_message
from backend.database.sql_handler import SQLHandler
from backend.services.secrets import SecretResolver
from backend.services.serializers import destination_to_dict
from models.configs import (
    TelegramNotificationConfig,
    WebhookNotificationConfig,
    parse_notification_config,
    seal_config,
)
from models.sql.backup_automation import NotificationDestination, ScheduleNotification


logger = logging.getLogger(__name__)

NOTIFICATION_EVENTS = ("start", "success", "warning", "failure")
TELEGRAM_API_URL = "https://api.telegram.org"
REQUEST_TIMEOUT = 10.0

_EVENT_FLAGS = {
    "start": "notify_on_start",
    "success": "notify_on_success",
    "warning": "notify_on_warning",
    "failure": "notify_on_failure",
}


def _format_bytes(value: Any) -> Optional[str]:
    try:
        size = float(value)
    except (TypeError, ValueError):
        return None
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if size < 1024 or unit == "TiB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.2f} {unit}"
        size /= 1024
    return None


def build_notification_message(event: str, context: Dict[str, Any]) -> Tuple[str, str]:
    """Build a (title, body) pair for a backup event.

    Args:
        event: start|success|warning|failure.
        context: volume_name, repository_name and optional schedule_name,
            error, duration (seconds), files_processed, bytes_processed,
            snapshot_id.

    Returns:
        Tuple[str, str]: Title and plain text body.
    """

    titles = {
        "start": "Backup started",
        "success": "Backup completed successfully",
        "warning": "Backup completed with warnings",
        "failure": "Backup failed",
    }

    lines: List[Optional[str]] = [
        f"Volume: {context.get('volume_name')}",
        f"Repository: {context.get('repository_name')}",
    ]
    if context.get("schedule_name"):
        lines.append(f"Schedule: {context['schedule_name']}")

    if event in ("success", "warning"):
        if context.get("duration"):
            lines.append(f"Duration: {round(context['duration'])}s")
        if context.get("files_processed") is not None:
            lines.append(f"Files: {context['files_processed']}")
        size = _format_bytes(context.get("bytes_processed"))
        if size:
            lines.append(f"Size: {size}")
        if context.get("snapshot_id"):
            lines.append(f"Snapshot: {context['snapshot_id']}")

    if context.get("error"):
        label = "Warning" if event == "warning" else "Error"
        lines.append(f"{label}: {context['error']}")

    lines.append(f"Time: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')} UTC")
    return titles.get(event, "Backup notification"), "\n".join(line for line in lines if line)


class NotificationService:
    """Manage notification destinations and deliver backup notifications.

    Args:
        handler: Initialized SQL handler.
        secrets: Secret resolver (destination credentials are sealed).
        transport: Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        handler: SQLHandler,
        secrets: SecretResolver,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.handler = handler
        self.secrets = secrets
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=self.transport)

    def _parse(self, config: Any):
        try:
            return parse_notification_config(config)
        except ValidationError as exc:
            raise BadRequestError(f"Invalid notification configuration: {exc.errors()[0].get('msg', exc)}") from exc

    # -- destinations --------------------------------------------------------

    async def _get(self, session, destination_id: int) -> NotificationDestination:
        destination = await session.get(NotificationDestination, destination_id)
        if destination is None:
            raise NotFoundError("Notification destination not found")
        return destination

    async def list_destinations(self) -> List[Dict[str, Any]]:
        async with self.handler.AsyncSessionLocal() as session:
            result = await session.execute(select(NotificationDestination).order_by(NotificationDestination.name))
            return [destination_to_dict(d) for d in result.scalars().all()]

    async def get_destination(self, destination_id: int) -> Dict[str, Any]:
        async with self.handler.AsyncSessionLocal() as session:
            return destination_to_dict(await self._get(session, destination_id))

    async def create_destination(self, name: str, config: Any, *, enabled: bool = True) -> Dict[str, Any]:
        name = (name or "").strip()
        if not name:
            raise BadRequestError("Destination name is required")

        parsed = self._parse(config)
        sealed = seal_config(parsed, self.secrets.seal_secret)

        async with self.handler.AsyncSessionLocal() as session:
            existing = await session.execute(
                select(NotificationDestination.id).where(NotificationDestination.name == name)
            )
            if existing.first() is not None:
                raise ConflictError("A notification destination with this name already exists")

            destination = NotificationDestination(
                name=name,
                enabled=enabled,
                type=parsed.type,
                config=sealed.model_dump(mode="json"),
            )
            session.add(destination)
            await session.commit()
            await session.refresh(destination)
            logger.info("Created notification destination %s (%s)", name, parsed.type)
            return destination_to_dict(destination)

    async def update_destination(
        self,
        destination_id: int,
        *,
        name: Optional[str] = None,
        config: Any = None,
        enabled: Optional[bool] = None,
    ) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        async with self.handler.AsyncSessionLocal() as session:
            destination = await self._get(session, destination_id)

            if name is not None and name.strip() and name.strip() != destination.name:
                taken = await session.execute(
                    select(NotificationDestination.id).where(
                        NotificationDestination.name == name.strip(),
                        NotificationDestination.id != destination_id,
                    )
                )
                if taken.first() is not None:
                    raise ConflictError("A notification destination with this name already exists")
                values["name"] = name.strip()

            if config is not None:
                parsed = self._parse(config)
                values["config"] = seal_config(parsed, self.secrets.seal_secret).model_dump(mode="json")
                values["type"] = parsed.type

            if enabled is not None:
                values["enabled"] = enabled

            if values:
                await session.execute(
                    update(NotificationDestination).where(NotificationDestination.id == destination_id).values(**values)
                )
                await session.commit()

        return await self.get_destination(destination_id)

    async def delete_destination(self, destination_id: int) -> None:
        async with self.handler.AsyncSessionLocal() as session:
            await self._get(session, destination_id)
            await session.execute(delete(NotificationDestination).where(NotificationDestination.id == destination_id))
            await session.commit()

    async def test_destination(self, destination_id: int) -> Dict[str, Any]:
        """Send a test message to a destination."""

        async with self.handler.AsyncSessionLocal() as session:
            destination = await self._get(session, destination_id)

        try:
            await self._deliver(destination, "Test notification", "This is a test notification.")
        except (httpx.HTTPError, ServiceError, ValueError) as exc:
            return {"success": False, "error": to_message(exc)}
        return {"success": True}

    # -- delivery ------------------------------------------------------------

    async def _deliver(self, destination: NotificationDestination, title: str, body: str) -> None:
        config = parse_notification_config(destination.config)
        resolve = self.secrets.resolve_secret

        async with self._client() as client:
            if isinstance(config, TelegramNotificationConfig):
                url = f"{TELEGRAM_API_URL}/bot{resolve(config.bot_token)}/sendMessage"
                response = await client.post(url, json={"chat_id": config.chat_id, "text": f"{title}\n\n{body}"})
                data = response.json()
                if not data.get("ok"):
                    raise ServiceError(f"Telegram API error: {data.get('description', 'Unknown error')}")
                return

            if isinstance(config, WebhookNotificationConfig):
                response = await client.request(
                    config.method,
                    resolve(config.url),
                    json={"title": title, "message": body},
                    headers=config.headers,
                )
                response.raise_for_status()

    async def send_backup_notification(self, schedule_id: int, event: str, context: Dict[str, Any]) -> None:
        """Notify every enabled destination subscribed to `event` for a schedule.

        Never raises; each destination is attempted independently.
        """

        flag = _EVENT_FLAGS.get(event)
        if flag is None:
            logger.warning("Unknown notification event %s", event)
            return

        try:
            async with self.handler.AsyncSessionLocal() as session:
                result = await session.execute(
                    select(ScheduleNotification).where(ScheduleNotification.schedule_id == schedule_id)
                )
                assignments = [
                    a
                    for a in result.scalars().unique().all()
                    if a.destination is not None and a.destination.enabled and getattr(a, flag)
                ]
        except Exception:
            logger.exception("Error loading notification assignments for schedule %s", schedule_id)
            return

        if not assignments:
            logger.debug("No notification destinations configured for backup %s event %s", schedule_id, event)
            return

        title, body = build_notification_message(event, context)

        for assignment in assignments:
            destination = assignment.destination
            try:
                await self._deliver(destination, title, body)
                logger.info(
                    "Notification sent to %s for backup %s event %s",
                    destination.name,
                    schedule_id,
                    event,
                )
            except Exception as exc:
                logger.error(
                    "Error sending notification to %s for backup %s: %s",
                    destination.name,
                    schedule_id,
                    to_message(exc),
                )
