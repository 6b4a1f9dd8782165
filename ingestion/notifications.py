"""
Job notifications over email and webhooks.

Each job carries its own NotificationConfig as JSON. Completion and failure
notifications respect the config flags; paused and cancelled notifications
are always sent. Send failures are logged and reported as False, never
raised into the caller.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import asyncio
import logging

import httpx

from core.config import settings
from core.exceptions import NotificationError
from schemas.job import IngestionJobDefinition, JobStatus, NotificationConfig, NotificationMethod

logger = logging.getLogger(__name__)

STATUS_PHRASES = {
    JobStatus.COMPLETED: "completed successfully",
    JobStatus.FAILED: "failed",
    JobStatus.CANCELLED: "was cancelled",
    JobStatus.PAUSED: "was paused",
    JobStatus.RUNNING: "is currently running",
}

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S UTC"


def status_phrase(status: JobStatus) -> str:
    return STATUS_PHRASES.get(status, status.value.lower())


class EmailSender:
    """
    Email channel. The default implementation only logs the send; plug in a
    real mail transport by overriding send().
    """

    async def send(self, recipients: List[str], subject: str, body: str):
        logger.info(f"Would send email to {', '.join(recipients)}: {subject}")


class JobNotificationService:

    def __init__(
        self,
        email_sender: Optional[EmailSender] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        webhook_timeout: Optional[float] = None
    ):
        self.email_sender = email_sender or EmailSender()
        self._http_client = http_client
        self.webhook_timeout = webhook_timeout or settings.NOTIFICATION_WEBHOOK_TIMEOUT_SECONDS

    def should_send(self, job: IngestionJobDefinition, status: JobStatus) -> bool:
        config = job.notification_config
        if status is JobStatus.COMPLETED:
            return config.notify_on_completion
        if status is JobStatus.FAILED:
            return config.notify_on_failure
        return status in (JobStatus.PAUSED, JobStatus.CANCELLED)

    def build_message(
        self,
        job: IngestionJobDefinition,
        status: JobStatus,
        message: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> str:
        phrase = status_phrase(status)
        timestamp = (now or datetime.now(timezone.utc)).strftime(TIMESTAMP_FORMAT)
        template = job.notification_config.message_template
        if template:
            return (
                template
                .replace("{jobId}", job.id or "")
                .replace("{jobName}", job.name)
                .replace("{status}", phrase)
                .replace("{timestamp}", timestamp)
                .replace("{message}", message or "")
            )

        text = f"Ingestion job '{job.name}' (ID: {job.id}) {phrase} at {timestamp}."
        if message:
            text += f"\n\nDetails: {message}"
        return text

    async def send(self, job: IngestionJobDefinition, status: JobStatus, message: Optional[str] = None) -> bool:
        """Send a notification for `status`; returns True when every configured channel succeeded"""
        if not self.should_send(job, status):
            logger.debug(f"No notification configured for job {job.id} with status {status.value}")
            return False

        config = job.notification_config
        text = self.build_message(job, status, message)

        if config.method is NotificationMethod.EMAIL:
            return await self._send_email(job, config, status, text)
        if config.method is NotificationMethod.WEBHOOK:
            return await self._send_webhooks(job, config, status, text)

        email_ok = await self._send_email(job, config, status, text)
        webhook_ok = await self._send_webhooks(job, config, status, text)
        return email_ok and webhook_ok

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    async def _send_email(
        self,
        job: IngestionJobDefinition,
        config: NotificationConfig,
        status: JobStatus,
        text: str
    ) -> bool:
        if not config.email_recipients:
            logger.warning(f"No email recipients configured for job {job.id}")
            return False
        subject = f"Ingestion job '{job.name}' {status_phrase(status)}"
        try:
            await self.email_sender.send(config.email_recipients, subject, text)
        except Exception as e:
            logger.error(f"Failed to send email notification for job {job.id}: {e}")
            return False
        return True

    def webhook_payload(self, job: IngestionJobDefinition, status: JobStatus, text: str) -> Dict[str, Any]:
        return {
            "jobId": job.id,
            "jobName": job.name,
            "tenantId": job.tenant_id,
            "status": status.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "message": text,
        }

    async def _post(self, client: httpx.AsyncClient, url: str, payload: Dict[str, Any], job_id: str) -> bool:
        try:
            response = await client.post(url, json=payload)
            if response.is_success:
                return True
            raise NotificationError(
                f"Webhook returned HTTP {response.status_code}",
                context={"job_id": job_id, "channel": "webhook", "url": url}
            )
        except NotificationError as e:
            logger.error(f"Webhook notification failed for job {job_id}", extra={"error_context": e.to_dict()})
        except httpx.HTTPError as e:
            logger.error(f"Failed to send webhook to {url} for job {job_id}: {e}")
        return False

    async def _send_webhooks(
        self,
        job: IngestionJobDefinition,
        config: NotificationConfig,
        status: JobStatus,
        text: str
    ) -> bool:
        if not config.webhook_urls:
            logger.warning(f"No webhook URLs configured for job {job.id}")
            return False

        payload = self.webhook_payload(job, status, text)
        if self._http_client is not None:
            results = await asyncio.gather(
                *(self._post(self._http_client, url, payload, job.id) for url in config.webhook_urls)
            )
        else:
            async with httpx.AsyncClient(timeout=self.webhook_timeout) as client:
                results = await asyncio.gather(
                    *(self._post(client, url, payload, job.id) for url in config.webhook_urls)
                )
        # every webhook must succeed
        return all(results)
