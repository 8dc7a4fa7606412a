"""Webhook notifications."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from .runner import RunReport

logger = logging.getLogger(__name__)


class Notifier:
    """Send webhook notifications for run events."""

    def __init__(self, webhook_url: str = "", events: list[str] | None = None):
        self.webhook_url = webhook_url
        self.events = events or []
        self.client = httpx.AsyncClient()

    async def notify(self, event: str, report: RunReport) -> None:
        if not self.webhook_url or event not in self.events:
            return

        payload = {
            "event": event,
            "provider": report.provider,
            "allowance": report.allowance.allowance if report.allowance else 0,
            "dry_run": report.dry_run,
            "tasks": [
                {
                    "project": o.project,
                    "task_type": o.task_type,
                    "status": o.status.value if o.status else "selected",
                    "output_ref": o.output_ref,
                    "error": o.error,
                }
                for o in report.outcomes
            ],
        }

        try:
            resp = await self.client.post(self.webhook_url, json=payload, timeout=10)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("webhook notification %s failed: %s", event, exc)

    async def close(self) -> None:
        await self.client.aclose()
