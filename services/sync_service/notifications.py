"""Alerts for sync jobs that failed and were scheduled for recovery."""

import logging
from typing import Optional

import httpx

from shared.config import get_notification_config
from services.sync_service.retry import retry_with_exponential_backoff

logger = logging.getLogger(__name__)


def describe_failure(job_id: str, user_id: Optional[str], error: str, phase: Optional[str] = None) -> str:
    summary = f"Page sync {job_id} for {user_id or 'anonymous'} stopped"
    if phase:
        summary += f" while {phase}"
    return f"{summary}: {error}"


class NotificationService:
    """Posts a webhook alert when a sync job fails; always logs the failure."""

    def __init__(self, enabled: Optional[bool] = None, webhook_url: Optional[str] = None):
        config = get_notification_config()
        self.enabled = config["enabled"] if enabled is None else enabled
        self.webhook_url = webhook_url or config["webhook_url"]

    async def notify_sync_failure(
        self,
        job_id: str,
        user_id: Optional[str],
        error: str,
        phase: Optional[str] = None,
        resume_token: Optional[str] = None,
    ) -> bool:
        """
        Report a failed sync job.

        Args:
            job_id: The failed job, also the key of its saved checkpoint
            user_id: Owner of the pages being synced
            error: Final error after retries
            phase: Phase the checkpoint will resume from
            resume_token: Download cursor saved with the checkpoint

        Returns:
            True if the webhook accepted the alert
        """
        summary = describe_failure(job_id, user_id, error, phase)
        logger.warning(summary)

        if not self.enabled or not self.webhook_url:
            logger.debug(f"Webhook alerts off, job {job_id} only logged")
            return False

        payload = {
            "text": summary,
            "jobId": job_id,
            "userId": user_id,
            "error": error,
            "phase": phase,
            "resumeToken": resume_token,
        }
        try:
            await self._post(payload)
        except httpx.HTTPError as e:
            logger.error(f"Could not deliver failure alert for job {job_id}: {e}")
            return False

        logger.info(f"Failure alert delivered for job {job_id}")
        return True

    @retry_with_exponential_backoff(max_retries=2, exceptions=(httpx.HTTPError,))
    async def _post(self, payload: dict) -> None:
        async with httpx.AsyncClient() as client:
            response = await client.post(self.webhook_url, json=payload, timeout=10.0)
            response.raise_for_status()
