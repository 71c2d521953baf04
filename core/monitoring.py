import logging
from datetime import datetime
from typing import Any, Dict

import prometheus_client as prom

logger = logging.getLogger("prdgen.monitoring")

class MonitoringService:
    """Prometheus counters for the generation pipeline."""

    def __init__(self, registry: prom.CollectorRegistry = None):
        self.registry = registry or prom.CollectorRegistry()
        self.start_time = datetime.now()
        self.metrics = {
            'generations': prom.Counter(
                'prd_generations_total', 'Finished PRD generations', ['kind', 'status'],
                registry=self.registry,
            ),
            'upstream_errors': prom.Counter(
                'prd_upstream_errors_total', 'Classified upstream provider errors', ['kind'],
                registry=self.registry,
            ),
        }

    def log_generation(self, kind: str, status: str):
        """Counts a finished generate/refine run ("success", "error", "cancelled")."""
        self.metrics['generations'].labels(kind=kind, status=status).inc()

    def log_upstream_error(self, kind: str):
        self.metrics['upstream_errors'].labels(kind=kind).inc()

    def render(self) -> bytes:
        """Prometheus text exposition of this service's registry."""
        return prom.generate_latest(self.registry)

    def health_check(self) -> Dict[str, Any]:
        """Returns service health status."""
        return {
            'status': 'OK',
            'uptime_seconds': int((datetime.now() - self.start_time).total_seconds()),
        }
