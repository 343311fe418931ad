"""Single-container update pipeline.

Drives one container through pull, optional scan, stop, remove, create and
start, yielding a ProgressEvent after every transition. Step order is fixed:

    pulling -> [scanning -> blocked | approved] -> stopping (if running)
            -> removing -> creating -> starting (if running) -> done

Terminal steps are ``done``, ``failed``, ``blocked`` and ``skipped``. Errors
raised by a step end the container's pipeline with a ``failed`` event; they
never propagate to the batch.
"""

import logging
import os
from collections.abc import AsyncIterator
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from dockgate.exceptions import (
    ContainerNotFoundError,
    PullFailedError,
    ScanFailedError,
    SwapFailedError,
    UpdatePipelineError,
)
from dockgate.schemas.update import ProgressEvent, ScanCounts, ScannerCounts
from dockgate.services import metrics
from dockgate.services.audit import record_audit_event
from dockgate.services.docker_runtime import (
    ContainerCreateSpec,
    ContainerSnapshot,
    DockerRuntime,
    RuntimeContext,
)
from dockgate.services.image_tags import is_digest_based_image, matches_image_pattern, staged_image
from dockgate.services.scan_store import ScanStore
from dockgate.services.scanner import DockerScanner, ScannerResult, ScannerSettings
from dockgate.services.vulnerability_policy import (
    ScanSummary,
    VulnerabilityCriteria,
    combine_scan_summaries,
    evaluate,
)
from dockgate.utils.error_handling import log_and_continue, safe_rollback
from dockgate.utils.security import is_valid_container_ref, sanitize_log_message

logger = logging.getLogger(__name__)


def own_container_id() -> str | None:
    """Container id prefix of this process, if it runs inside a container.

    Docker sets the hostname of a container to its 12 character short id.
    """
    hostname = os.getenv("HOSTNAME", "")
    if len(hostname) >= 12 and all(c in "0123456789abcdef" for c in hostname):
        return hostname
    return None


@dataclass(frozen=True)
class ContainerTarget:
    """One container of a batch and its position in it."""

    id: str
    name: str
    current: int
    total: int

    def event(self, event_type: str, counters: bool = False, **fields) -> ProgressEvent:
        if counters:
            fields.setdefault("current", self.current)
            fields.setdefault("total", self.total)
        return ProgressEvent(
            type=event_type, container_id=self.id, container_name=self.name, **fields
        )

    def step(self, step: str, **fields) -> ProgressEvent:
        return self.event("progress", counters=True, step=step, **fields)


class UpdatePipeline:
    """Update containers one at a time on a single Docker host."""

    def __init__(
        self,
        runtime: DockerRuntime,
        scanner: DockerScanner,
        db: AsyncSession,
        ctx: RuntimeContext,
        scanner_settings: ScannerSettings,
        criteria: VulnerabilityCriteria = VulnerabilityCriteria.NEVER,
        self_image_pattern: str = "dockgate",
        self_container_id: str | None = None,
    ) -> None:
        self.runtime = runtime
        self.scanner = scanner
        self.db = db
        self.ctx = ctx
        self.scanner_settings = scanner_settings
        self.criteria = VulnerabilityCriteria(criteria)
        self.self_image_pattern = self_image_pattern
        self.self_container_id = self_container_id

    def is_self(self, snapshot: ContainerSnapshot) -> bool:
        """True if the snapshot is the container running this process."""
        if matches_image_pattern(snapshot.image, self.self_image_pattern):
            return True
        return bool(self.self_container_id) and snapshot.id.startswith(self.self_container_id)

    async def run(self, container_id: str, current: int, total: int) -> AsyncIterator[ProgressEvent]:
        """Update one container, ending with exactly one terminal event."""
        target = ContainerTarget(container_id, "unknown", current, total)
        try:
            # Never hand a malformed id to the Docker API; it cannot name a container
            if not is_valid_container_ref(container_id):
                logger.warning(f"Invalid container reference: {sanitize_log_message(container_id)!r}")
                raise ContainerNotFoundError(container_id)
            snapshot = await self.runtime.inspect_container(self.ctx, container_id)
            target = ContainerTarget(container_id, snapshot.name, current, total)
            async for event in self._update(target, snapshot):
                yield event
        except UpdatePipelineError as e:
            logger.warning(f"Update of {sanitize_log_message(target.name)} failed: {e}")
            yield target.step("failed", success=False, error=str(e))

    async def _update(self, target: ContainerTarget, snapshot: ContainerSnapshot) -> AsyncIterator[ProgressEvent]:
        if self.is_self(snapshot):
            logger.info(f"Skipping {snapshot.name}: refusing to update own container")
            yield target.step(
                "skipped",
                success=True,
                message=f"Skipping {snapshot.name} - cannot update Dockgate itself",
            )
            return

        async for event in self._pull(target, snapshot.image):
            yield event

        if self.scanner_settings.enabled and not is_digest_based_image(snapshot.image):
            approved = True
            async with staged_image(self.runtime, self.ctx, snapshot.image, snapshot.image_id) as staged:
                async for event in self._scan(target, snapshot, staged.temp_tag, staged.new_image_id):
                    if event.type == "blocked":
                        approved = False
                    yield event
                if approved:
                    await staged.promote()
            if not approved:
                return

        async for event in self._swap(target, snapshot):
            yield event

    async def _pull(self, target: ContainerTarget, image: str) -> AsyncIterator[ProgressEvent]:
        yield target.step("pulling", message=f"Pulling {image}...")
        try:
            async for progress in self.runtime.pull_image(self.ctx, image):
                if progress.status:
                    yield target.event(
                        "pull_log",
                        pull_status=progress.status,
                        pull_id=progress.id,
                        pull_progress=progress.progress,
                    )
        except Exception as e:
            raise PullFailedError(image, getattr(e, "explanation", None) or str(e)) from e

    async def _scan_reference(
        self, target: ContainerTarget, reference: str
    ) -> AsyncIterator[ProgressEvent | tuple[ScannerResult, ...]]:
        """Run the scanner, yielding scan_log events and finally the results."""
        async for progress in self.scanner.scan_image(self.ctx, reference, self.scanner_settings):
            if progress.stage == "complete":
                yield progress.results or ()
            elif progress.output or progress.message:
                yield target.event(
                    "scan_log",
                    scanner=progress.scanner,
                    message=progress.output or progress.message,
                )

    async def _scan(
        self,
        target: ContainerTarget,
        snapshot: ContainerSnapshot,
        temp_tag: str,
        new_image_id: str,
    ) -> AsyncIterator[ProgressEvent]:
        yield target.event(
            "scan_start",
            counters=True,
            step="scanning",
            message=f"Scanning {snapshot.image} for vulnerabilities...",
        )

        results: tuple[ScannerResult, ...] = ()
        try:
            async for item in self._scan_reference(target, temp_tag):
                if isinstance(item, ProgressEvent):
                    yield item
                else:
                    results = item
        except Exception as e:
            metrics.image_scans_total.labels(scanner=self.scanner_settings.scanner, status="failed").inc()
            raise ScanFailedError(temp_tag, str(e)) from e

        for result in results:
            metrics.image_scans_total.labels(scanner=result.scanner, status="success").inc()
            await self._save_scan(result, new_image_id)

        summary = combine_scan_summaries(result.summary for result in results) if results else None
        scan_result = ScanCounts.from_summary(summary) if summary else None
        scanner_results = [
            ScannerCounts(scanner=result.scanner, **result.summary.to_dict()) for result in results
        ] or None

        decision = None
        if summary is not None:
            baseline = None
            if self.criteria is VulnerabilityCriteria.MORE_THAN_CURRENT:
                async for event in self._baseline(target, snapshot):
                    if isinstance(event, ScanSummary):
                        baseline = event
                    else:
                        yield event
            decision = evaluate(self.criteria, summary, baseline)
            logger.info(f"Policy for {snapshot.name} ({self.criteria.value}): {decision.reason}")

        yield target.event(
            "scan_complete",
            scan_result=scan_result,
            scanner_results=scanner_results,
            message=(
                f"Scan complete: {summary.describe()}"
                if summary is not None
                else "Scan complete: no vulnerabilities found"
            ),
        )

        if decision is not None and decision.blocked:
            yield target.event(
                "blocked",
                counters=True,
                step="blocked",
                success=False,
                scan_result=scan_result,
                scanner_results=scanner_results,
                block_reason=decision.reason,
                message=f"Update blocked: {decision.reason}",
            )

    async def _baseline(
        self, target: ContainerTarget, snapshot: ContainerSnapshot
    ) -> AsyncIterator[ProgressEvent | ScanSummary]:
        """Summary of the running image: cached if known, scanned otherwise.

        Yields nothing but scan_log events when no baseline can be produced.
        """
        try:
            cached = await ScanStore.get_combined_scan_for_image(
                self.db, snapshot.image_id, self.ctx.environment_id
            )
        except Exception as e:
            log_and_continue(logger, e, f"Failed to load cached scan of {snapshot.image_id[:19]}")
            cached = None
        if cached is not None:
            yield cached
            return

        # The original tag still resolves to the running image at this point
        results: tuple[ScannerResult, ...] = ()
        try:
            async for item in self._scan_reference(target, snapshot.image):
                if isinstance(item, ProgressEvent):
                    yield item
                else:
                    results = item
        except Exception as e:
            log_and_continue(logger, e, f"Baseline scan of {snapshot.image} failed")
            return

        for result in results:
            await self._save_scan(result, snapshot.image_id)
        if results:
            yield combine_scan_summaries(result.summary for result in results)

    async def _save_scan(self, result: ScannerResult, image_id: str) -> None:
        try:
            await ScanStore.save_vulnerability_scan(
                self.db, result, image_id, self.ctx.environment_id
            )
        except Exception as e:
            message = f"Failed to save {result.scanner} scan of {result.image_name}"
            log_and_continue(logger, e, message)
            await safe_rollback(logger, self.db, message)

    async def _swap(self, target: ContainerTarget, snapshot: ContainerSnapshot) -> AsyncIterator[ProgressEvent]:
        name = snapshot.name

        if snapshot.running:
            yield target.step("stopping", message=f"Stopping {name}...")
            await self._swap_step("stopping", self.runtime.stop_container(self.ctx, snapshot.id))

        yield target.step("removing", message=f"Removing old container {name}...")
        await self._swap_step("removing", self.runtime.remove_container(self.ctx, snapshot.id, force=True))

        yield target.step("creating", message=f"Creating new container {name}...")
        created = await self._swap_step(
            "creating",
            self.runtime.create_container(self.ctx, ContainerCreateSpec.from_snapshot(snapshot)),
        )

        if snapshot.running:
            yield target.step("starting", message=f"Starting {name}...")
            await self._swap_step("starting", created.start())

        await self._record_success(snapshot, created.id)

        yield target.step("done", success=True, message=f"{name} updated successfully")

    async def _swap_step(self, step: str, operation):
        try:
            return await operation
        except Exception as e:
            raise SwapFailedError(step, getattr(e, "explanation", None) or str(e)) from e

    async def _record_success(self, snapshot: ContainerSnapshot, new_container_id: str) -> None:
        try:
            await ScanStore.remove_pending_container_update(
                self.db, self.ctx.environment_id, snapshot.id
            )
        except Exception as e:
            message = f"Failed to clear pending update for {snapshot.name}"
            log_and_continue(logger, e, message)
            await safe_rollback(logger, self.db, message)

        try:
            await record_audit_event(
                self.db,
                action="update",
                entity_type="container",
                entity_id=new_container_id,
                entity_name=snapshot.name,
                environment_id=self.ctx.environment_id,
                metadata={
                    "batchUpdate": True,
                    "previousContainerId": snapshot.id,
                    "image": snapshot.image,
                },
            )
        except Exception as e:
            message = f"Failed to record audit event for {snapshot.name}"
            log_and_continue(logger, e, message)
            await safe_rollback(logger, self.db, message)
