"""Prometheus metrics for Dockgate."""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from dockgate.models.pending_update import PendingContainerUpdate

app_info = Info("dockgate_app", "Dockgate application information")
app_info.info({"name": "Dockgate"})

container_updates_total = Counter(
    "dockgate_container_updates_total", "Container updates by outcome", ["outcome"]
)
update_batches_total = Counter("dockgate_update_batches_total", "Batch update runs")
image_scans_total = Counter(
    "dockgate_image_scans_total", "Image scans by scanner and status", ["scanner", "status"]
)
container_update_duration = Histogram(
    "dockgate_container_update_duration_seconds",
    "Time to take one container through the update pipeline",
    buckets=[5, 15, 30, 60, 120, 300, 600, 1200],
)
pending_updates = Gauge("dockgate_pending_updates", "Containers with a pending update marker")


async def collect_metrics(db: AsyncSession) -> None:
    """Refresh gauges that are derived from the database."""
    result = await db.execute(select(func.count(PendingContainerUpdate.id)))
    pending_updates.set(result.scalar() or 0)


def get_metrics() -> bytes:
    """Return all metrics in Prometheus exposition format."""
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
