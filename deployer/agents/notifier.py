"""
Notifier
========
Posts a single human-readable status message to an incoming webhook.

Best-effort: delivery failures are logged and swallowed. The notifier never
changes a run's result and never raises to its caller.
"""
import logging
from typing import Optional

import httpx

from deployer.core.errors import NotificationFailure
from deployer.models.pipeline_run import PipelineRun

logger = logging.getLogger(__name__)

_STATUS_ICONS = {
    "success": "✅",
    "failure": "❌",
    "aborted": "⚠️",
}


def format_status(run: PipelineRun, final_result: Optional[str] = None) -> str:
    """One status line: result, tag, and each stage's outcome in order."""
    result = final_result or run.final_result or "pending"
    icon = _STATUS_ICONS.get(result, "ℹ️")
    stages = ", ".join(f"{s.stage}={s.outcome}" for s in run.stage_results)
    line = f"{icon} Pipeline {run.run_id} {result.upper()} | {run.image_tag or 'no image'}"
    if run.branch:
        line += f" | branch {run.branch}"
    if stages:
        line += f" | {stages}"
    if run.convergence_timed_out:
        line += " | rollout still converging"
    return line


class Notifier:
    def __init__(self, webhook_url: str = "", timeout_seconds: float = 10.0) -> None:
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self.sent_count = 0

    async def _post(self, message: str) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(self.webhook_url, json={"text": message})
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise NotificationFailure(f"Webhook returned HTTP {e.response.status_code}")
        except httpx.HTTPError as e:
            raise NotificationFailure(f"Webhook delivery failed: {e}")

    async def notify(self, message: str) -> None:
        self.sent_count += 1
        if not self.webhook_url:
            logger.info("[NOTIFY] No webhook configured: %s", message)
            return

        try:
            await self._post(message)
            logger.info("[NOTIFY] Delivered: %s", message)
        except NotificationFailure as e:
            logger.error("[NOTIFY] %s (message: %s)", e, message)
        except Exception as e:
            logger.error("[NOTIFY] Unexpected notifier error: %s", e, exc_info=True)
