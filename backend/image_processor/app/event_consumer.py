import asyncio
from typing import Any, Awaitable, Callable, Dict

import structlog

from backend.image_processor.app.storage import ObjectStorage

logger = structlog.get_logger(__name__)

OBJECT_CREATED_EVENTS = ("s3:ObjectCreated:*",)


class BucketNotificationConsumer:
    """Feeds object-created notifications for uploads/ into the processor"""

    def __init__(self, object_storage: ObjectStorage, bucket_name: str, prefix: str,
                 record_handler: Callable[[Dict[str, Any]], Awaitable[Any]]):
        self.storage = object_storage
        self.bucket_name = bucket_name
        self.prefix = prefix
        self.record_handler = record_handler
        self.running = False
        self.loop = None
        self.events = None
        self.records_handled = 0

    def process_event(self, event: Dict[str, Any]):
        """Handle the records of one notification sequentially"""
        for record in event.get("Records", []):
            try:
                outcome = self.loop.run_until_complete(self.record_handler(record))
                self.records_handled += 1
                logger.info(
                    "Notification record handled",
                    key=record.get("s3", {}).get("object", {}).get("key"),
                    status=getattr(outcome, "status", None)
                )
            except Exception as e:
                # Keep listening; the original stays in uploads/ for a manual retry
                logger.error("Notification record failed", error=str(e))

    def start_consuming(self):
        """Block on the notification stream until stopped"""
        self.running = True
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)

        logger.info("Listening for bucket notifications", bucket=self.bucket_name, prefix=self.prefix)
        try:
            with self.storage.listen(self.bucket_name, self.prefix, OBJECT_CREATED_EVENTS) as events:
                self.events = events
                for event in events:
                    if not self.running:
                        break
                    self.process_event(event)
        except Exception as e:
            if not self.running:
                # stop() closed the stream under a blocked read
                logger.info("Notification stream closed", bucket=self.bucket_name)
                return
            logger.error("Consumer error", error=str(e))
            raise
        finally:
            self.running = False
            self.events = None
            self.loop.close()
            asyncio.set_event_loop(None)

    def stop(self):
        """Stop consuming and close the notification stream so a blocked read returns"""
        self.running = False
        events, self.events = self.events, None
        if events is not None:
            try:
                events.__exit__(None, None, None)
            except Exception as e:
                logger.warning("Error closing notification stream", error=str(e))

    def health_check(self) -> Dict[str, Any]:
        return {
            "status": "healthy" if self.running else "unhealthy",
            "bucket": self.bucket_name,
            "records_handled": self.records_handled
        }
