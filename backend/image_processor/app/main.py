import asyncio
import logging
import signal
import sys
from threading import Thread
from typing import Optional

import structlog
from sqlalchemy.engine import Engine

from backend.image_processor.app.config import Settings, settings
from backend.image_processor.app.database import create_db_engine, create_session_factory, init_db
from backend.image_processor.app.event_consumer import BucketNotificationConsumer
from backend.image_processor.app.image_processor import ImageProcessor, UPLOAD_PREFIX
from backend.image_processor.app.metrics import ProcessorMetrics
from backend.image_processor.app import storage

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


def build_processor(config: Settings, engine: Engine,
                    metrics: Optional[ProcessorMetrics] = None) -> ImageProcessor:
    """Wire the processor to its storage client and database pool"""
    return ImageProcessor(
        storage.ObjectStorage(storage.create_client(config)),
        create_session_factory(engine),
        metrics=metrics,
        default_region=config.aws_region,
        public_base_url=config.public_base_url
    )


class ImageProcessorService:
    """Long-running worker driven by bucket notifications"""

    def __init__(self, config: Settings = settings):
        self.config = config
        self.metrics = ProcessorMetrics()
        self.engine = None
        self.processor = None
        self.consumer = None
        self.running = False

    def initialize(self):
        """Initialize all components"""
        if not self.config.aws_bucket_name:
            raise ValueError("AWS_BUCKET_NAME must be set for the notification worker")

        logger.info("Initializing Image Processor Service")
        self.engine = create_db_engine(self.config)
        init_db(self.engine)
        self.processor = build_processor(self.config, self.engine, self.metrics)

        self.consumer = BucketNotificationConsumer(
            self.processor.storage,
            self.config.aws_bucket_name,
            UPLOAD_PREFIX,
            self.processor.process_record
        )
        logger.info("Image Processor Service initialized", bucket=self.config.aws_bucket_name)

    def start_consumer(self) -> Thread:
        """Start the notification consumer in a separate thread"""
        def consumer_thread():
            try:
                self.consumer.start_consuming()
            except Exception as e:
                logger.error("Consumer error", error=str(e))

        thread = Thread(target=consumer_thread, daemon=True)
        thread.start()
        return thread

    def start_metrics_server(self) -> Optional[Thread]:
        """Start metrics server"""
        def metrics_server():
            from wsgiref.simple_server import make_server
            from backend.image_processor.app.metrics import create_metrics_app

            try:
                server = make_server('0.0.0.0', self.config.metrics_port, create_metrics_app())
                logger.info("Metrics server started", port=self.config.metrics_port)
                server.serve_forever()
            except Exception as e:
                logger.error("Metrics server error", error=str(e))

        if self.config.metrics_enabled:
            thread = Thread(target=metrics_server, daemon=True)
            thread.start()
            return thread

        return None

    def check_consumer(self, thread: Thread) -> Thread:
        """Restart the consumer when its thread has died; returns the live thread"""
        if thread.is_alive():
            return thread

        logger.error("Consumer thread died, restarting...", **self.consumer.health_check())
        return self.start_consumer()

    async def run(self):
        """Main service loop"""
        try:
            self.initialize()
            self.running = True

            consumer_thread = self.start_consumer()
            self.start_metrics_server()

            logger.info("Image Processor Service is running")

            while self.running:
                await asyncio.sleep(1)

                consumer_thread = self.check_consumer(consumer_thread)

        except KeyboardInterrupt:
            logger.info("Received interrupt signal")
        finally:
            self.shutdown()

    def shutdown(self):
        """Cleanup and shutdown"""
        logger.info("Shutting down Image Processor Service")
        self.running = False

        if self.consumer:
            self.consumer.stop()

        if self.engine:
            self.engine.dispose()

        logger.info("Image Processor Service shutdown complete", **self.metrics.get_metrics_summary())


# Global service instance
service = None


def signal_handler(signum, frame):
    """Handle shutdown signals"""
    logger.info("Received signal", signal=signum)
    if service:
        service.shutdown()
    sys.exit(0)


async def main():
    """Main entry point"""
    global service

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    service = ImageProcessorService()

    try:
        await service.run()
    except Exception as e:
        logger.error("Service failed", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    logging.basicConfig(level=getattr(logging, settings.log_level.upper()))
    asyncio.run(main())
