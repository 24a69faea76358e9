"""Export lifecycle notifications published to SQS."""

import json
import logging
from typing import Any, Dict, Optional

from bulk_exports.models import ExportJob, ExportResult

EXPORT_COMPLETED = "export_completed"
EXPORT_FAILED = "export_failed"


class EventPublisher:
    """
    Publishes export outcomes to an SQS queue.

    Delivery is best effort: failures are logged and never affect the job.
    """

    def __init__(
        self,
        sqs_client: Any,
        queue_url: Optional[str],
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            sqs_client: Async SQS client (aioboto3)
            queue_url: Destination queue; publishing is disabled when None
            logger: Logger instance
        """
        self.sqs_client = sqs_client
        self.queue_url = queue_url
        self.logger = logger or logging.getLogger(__name__)

    async def export_completed(self, job: ExportJob, result: ExportResult) -> None:
        await self._publish(
            {
                "type": EXPORT_COMPLETED,
                "customer_id": job.customer_id,
                "job_id": str(job.id),
                "result": result.to_dict(),
            }
        )

    async def export_failed(self, job: ExportJob, error: Dict[str, Any]) -> None:
        await self._publish(
            {
                "type": EXPORT_FAILED,
                "customer_id": job.customer_id,
                "job_id": str(job.id),
                "error": error,
            }
        )

    async def _publish(self, event: Dict[str, Any]) -> None:
        if self.sqs_client is None or not self.queue_url:
            return
        try:
            await self.sqs_client.send_message(
                QueueUrl=self.queue_url,
                MessageBody=json.dumps(event),
            )
            self.logger.debug(f"Published {event['type']} for job {event['job_id']}")
        except Exception as e:
            self.logger.error(
                f"Failed to publish {event['type']} for job {event['job_id']}: {e}"
            )
