from prometheus_client import Counter, Histogram, CollectorRegistry
from prometheus_client.exposition import make_wsgi_app
from typing import Dict, Any

# Create custom registry for image processor metrics
registry = CollectorRegistry()

images_processed_total = Counter(
    'processor_images_total',
    'Total number of trigger records handled',
    ['status'],
    registry=registry
)

processing_failures_total = Counter(
    'processor_failures_total',
    'Processing failures by pipeline step',
    ['step'],
    registry=registry
)

processing_duration_seconds = Histogram(
    'processor_duration_seconds',
    'Processing duration in seconds',
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
    registry=registry
)

resized_bytes_histogram = Histogram(
    'processor_resized_size_bytes',
    'Size of the re-encoded JPEG',
    buckets=[50_000, 100_000, 250_000, 500_000, 1_000_000, 2_500_000, 5_000_000],
    registry=registry
)


class ProcessorMetrics:
    """Thin wrapper over the processor's Prometheus collectors"""

    def __init__(self):
        self.counts = {'processed': 0, 'skipped': 0, 'failed': 0}

    def record_outcome(self, status: str, duration: float, failed_step: str = None):
        images_processed_total.labels(status=status).inc()
        processing_duration_seconds.observe(duration)
        self.counts[status] = self.counts.get(status, 0) + 1
        if failed_step:
            processing_failures_total.labels(step=failed_step).inc()

    def record_resized_size(self, size: int):
        resized_bytes_histogram.observe(size)

    def get_metrics_summary(self) -> Dict[str, Any]:
        return dict(self.counts)


def create_metrics_app():
    """WSGI app exposing the processor registry"""
    return make_wsgi_app(registry)
