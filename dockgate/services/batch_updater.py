"""Batch orchestration of container updates.

Containers of a batch are updated strictly one after another: the pipeline of
container i+1 starts only after container i reached a terminal step. The
stream opens with a ``start`` event and always ends with a ``complete`` event
whose counters sum to the number of requested containers.
"""

import logging
import time
from collections.abc import AsyncIterator, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from dockgate.db import AsyncSessionLocal
from dockgate.schemas.update import (
    BatchSummary,
    BatchUpdateResponse,
    ContainerUpdateResult,
    ProgressEvent,
)
from dockgate.services import metrics
from dockgate.services.docker_runtime import DockerRuntime
from dockgate.services.scanner import DockerScanner, ScannerSettings
from dockgate.services.settings_service import SettingsService, runtime_context
from dockgate.services.update_pipeline import UpdatePipeline, own_container_id
from dockgate.services.vulnerability_policy import VulnerabilityCriteria
from dockgate.utils.error_handling import safe_rollback

logger = logging.getLogger(__name__)


def _start_message(total: int, scanning: bool) -> str:
    message = f"Starting update of {total} container{'s' if total != 1 else ''}"
    if scanning:
        message += " with vulnerability scanning"
    return message


class BatchUpdater:
    """Run the update pipeline over a list of containers in one environment."""

    def __init__(
        self,
        runtime: DockerRuntime,
        environment_id: int | None = None,
        scanner: DockerScanner | None = None,
        session_factory: Callable[[], AsyncSession] | None = None,
    ) -> None:
        self.runtime = runtime
        self.environment_id = environment_id
        self.scanner = scanner or DockerScanner(runtime)
        self.session_factory = session_factory or AsyncSessionLocal

    async def _pipeline(
        self, db: AsyncSession, criteria: VulnerabilityCriteria
    ) -> tuple[UpdatePipeline, ScannerSettings]:
        ctx = await runtime_context(db, self.environment_id)
        # Read once so every container of the batch sees the same scanner
        scanner_settings = await ScannerSettings.load(db, self.environment_id)
        pipeline = UpdatePipeline(
            runtime=self.runtime,
            scanner=self.scanner,
            db=db,
            ctx=ctx,
            scanner_settings=scanner_settings,
            criteria=criteria,
            self_image_pattern=await SettingsService.get(db, "self_image_pattern") or "",
            self_container_id=own_container_id(),
        )
        return pipeline, scanner_settings

    async def run(
        self,
        container_ids: list[str],
        criteria: VulnerabilityCriteria = VulnerabilityCriteria.NEVER,
    ) -> AsyncIterator[ProgressEvent]:
        """Update ``container_ids`` in order, yielding progress for each."""
        criteria = VulnerabilityCriteria(criteria)
        total = len(container_ids)
        summary = BatchSummary(total=total)
        metrics.update_batches_total.inc()

        async with self.session_factory() as db:
            try:
                pipeline, scanner_settings = await self._pipeline(db, criteria)
            except Exception as e:
                logger.error(f"Failed to prepare batch update: {e}", exc_info=True)
                summary.failed = total
                metrics.container_updates_total.labels(outcome="failed").inc(total)
                yield ProgressEvent(type="start", total=total, message=_start_message(total, scanning=False))
                yield ProgressEvent(type="error", error=f"Failed to prepare update: {e}")
                yield ProgressEvent(type="complete", summary=summary, message=summary.describe())
                return

            logger.info(
                f"Starting batch update of {total} container(s) in environment "
                f"{self.environment_id} (scanner={scanner_settings.scanner}, criteria={criteria.value})"
            )
            yield ProgressEvent(
                type="start",
                total=total,
                message=_start_message(total, scanning=scanner_settings.enabled),
            )

            for index, container_id in enumerate(container_ids, start=1):
                started = time.monotonic()
                outcome = None
                error = None
                container_name = "unknown"
                try:
                    async for event in pipeline.run(container_id, index, total):
                        container_name = event.container_name or container_name
                        outcome = event.outcome or outcome
                        yield event
                except Exception as e:
                    logger.error(f"Unexpected error updating {container_id[:12]}: {e}", exc_info=True)
                    await safe_rollback(logger, db, f"Update of {container_id[:12]}")
                    error = str(e) or type(e).__name__

                if outcome is None:
                    outcome = "failed"
                    yield ProgressEvent(
                        type="progress",
                        step="failed",
                        container_id=container_id,
                        container_name=container_name,
                        current=index,
                        total=total,
                        success=False,
                        error=error or "Update ended without a result",
                    )

                setattr(summary, outcome, getattr(summary, outcome) + 1)
                metrics.container_updates_total.labels(outcome=outcome).inc()
                metrics.container_update_duration.observe(time.monotonic() - started)

        message = summary.describe()
        logger.info(f"Batch update finished: {message}")

        yield ProgressEvent(type="complete", summary=summary, message=message)


class OutcomeTally:
    """Outcome counts observed on a batch stream.

    Lets a consumer close a stream whose batch died before sending its own
    ``complete`` event: containers without a terminal event count as failed.
    """

    def __init__(self) -> None:
        self.summary = BatchSummary(total=0)
        self.completed = False

    def observe(self, event: ProgressEvent) -> None:
        if event.type == "start":
            self.summary = BatchSummary(total=event.total or 0)
        elif event.type == "complete":
            self.completed = True
        elif event.outcome is not None:
            setattr(self.summary, event.outcome, getattr(self.summary, event.outcome) + 1)

    def fallback_complete(self) -> ProgressEvent:
        summary = self.summary.model_copy()
        counted = summary.success + summary.failed + summary.blocked + summary.skipped
        summary.failed += max(summary.total - counted, 0)
        summary.total = max(summary.total, counted)
        return ProgressEvent(type="complete", summary=summary, message=summary.describe())


async def collect_results(events: AsyncIterator[ProgressEvent]) -> BatchUpdateResponse:
    """Drain a batch stream into a summary and one result per container."""
    results: list[ContainerUpdateResult] = []
    tally = OutcomeTally()
    summary = None
    try:
        async for event in events:
            tally.observe(event)
            if event.type == "complete":
                summary = event.summary
            elif event.outcome is not None:
                results.append(
                    ContainerUpdateResult(
                        container_id=event.container_id,
                        container_name=event.container_name or "unknown",
                        outcome=event.outcome,
                        error=event.error,
                        block_reason=event.block_reason,
                    )
                )
    except Exception as e:
        logger.error(f"Batch update aborted: {e}", exc_info=True)

    if summary is None:
        summary = tally.fallback_complete().summary
    return BatchUpdateResponse(summary=summary, results=results)
