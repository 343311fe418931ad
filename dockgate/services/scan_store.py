"""Persistence of vulnerability scans and pending-update markers."""

import logging

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from dockgate.models.pending_update import PendingContainerUpdate
from dockgate.models.vulnerability_scan import VulnerabilityScan
from dockgate.services.scanner import ScannerResult
from dockgate.services.vulnerability_policy import ScanSummary, combine_scan_summaries

logger = logging.getLogger(__name__)


class ScanStore:
    """Store and query scan results and pending container updates."""

    @staticmethod
    async def save_vulnerability_scan(
        db: AsyncSession,
        result: ScannerResult,
        image_id: str,
        environment_id: int | None = None,
    ) -> VulnerabilityScan:
        """Persist one scanner result for ``image_id``."""
        scan = VulnerabilityScan(
            environment_id=environment_id,
            image_id=image_id,
            image_name=result.image_name,
            scanner=result.scanner,
            scanned_at=result.scanned_at,
            scan_duration_ms=result.duration_ms,
            critical_count=result.summary.critical,
            high_count=result.summary.high,
            medium_count=result.summary.medium,
            low_count=result.summary.low,
            negligible_count=result.summary.negligible,
            unknown_count=result.summary.unknown,
            vulnerabilities=[vuln.to_dict() for vuln in result.vulnerabilities],
            error=result.error,
        )
        db.add(scan)
        await db.commit()
        await db.refresh(scan)
        return scan

    @staticmethod
    async def get_combined_scan_for_image(
        db: AsyncSession,
        image_id: str,
        environment_id: int | None = None,
    ) -> ScanSummary | None:
        """Combine the latest scan of each scanner for an image.

        Returns:
            Per-severity maximum across scanners, or None if never scanned
        """
        query = select(VulnerabilityScan).where(VulnerabilityScan.image_id == image_id)
        if environment_id is None:
            query = query.where(VulnerabilityScan.environment_id.is_(None))
        else:
            query = query.where(VulnerabilityScan.environment_id == environment_id)

        result = await db.execute(
            query.order_by(VulnerabilityScan.scanned_at.desc(), VulnerabilityScan.id.desc())
        )
        scans = result.scalars().all()
        if not scans:
            return None

        latest_by_scanner: dict[str, VulnerabilityScan] = {}
        for scan in scans:
            latest_by_scanner.setdefault(scan.scanner, scan)

        return combine_scan_summaries(
            ScanSummary(
                critical=scan.critical_count,
                high=scan.high_count,
                medium=scan.medium_count,
                low=scan.low_count,
                negligible=scan.negligible_count,
                unknown=scan.unknown_count,
            )
            for scan in latest_by_scanner.values()
        )

    @staticmethod
    async def list_pending_container_updates(
        db: AsyncSession, environment_id: int | None = None
    ) -> list[PendingContainerUpdate]:
        query = select(PendingContainerUpdate)
        if environment_id is None:
            query = query.where(PendingContainerUpdate.environment_id.is_(None))
        else:
            query = query.where(PendingContainerUpdate.environment_id == environment_id)
        result = await db.execute(query.order_by(PendingContainerUpdate.container_name))
        return list(result.scalars().all())

    @staticmethod
    async def remove_pending_container_update(
        db: AsyncSession, environment_id: int | None, container_id: str
    ) -> int:
        """Clear the pending-update marker of a container.

        Returns:
            Number of markers removed (0 if none existed)
        """
        query = delete(PendingContainerUpdate).where(
            PendingContainerUpdate.container_id == container_id
        )
        if environment_id is None:
            query = query.where(PendingContainerUpdate.environment_id.is_(None))
        else:
            query = query.where(PendingContainerUpdate.environment_id == environment_id)

        result = await db.execute(query)
        await db.commit()
        if result.rowcount:
            logger.debug(f"Cleared pending update marker for {container_id[:12]}")
        return result.rowcount or 0

    @staticmethod
    async def add_pending_container_update(
        db: AsyncSession,
        environment_id: int | None,
        container_id: str,
        container_name: str,
        current_image: str,
    ) -> PendingContainerUpdate:
        """Mark a container as having a newer image available.

        An existing marker for the container is refreshed rather than duplicated.
        """
        query = select(PendingContainerUpdate).where(
            PendingContainerUpdate.container_id == container_id
        )
        if environment_id is None:
            query = query.where(PendingContainerUpdate.environment_id.is_(None))
        else:
            query = query.where(PendingContainerUpdate.environment_id == environment_id)
        pending = (await db.execute(query)).scalar_one_or_none()

        if pending is None:
            pending = PendingContainerUpdate(
                environment_id=environment_id,
                container_id=container_id,
                container_name=container_name,
                current_image=current_image,
            )
            db.add(pending)
        else:
            pending.container_name = container_name
            pending.current_image = current_image
            pending.checked_at = func.now()

        await db.commit()
        await db.refresh(pending)
        return pending

    @staticmethod
    async def clear_pending_container_updates(db: AsyncSession, environment_id: int | None) -> int:
        """Remove every pending-update marker of an environment."""
        query = delete(PendingContainerUpdate)
        if environment_id is None:
            query = query.where(PendingContainerUpdate.environment_id.is_(None))
        else:
            query = query.where(PendingContainerUpdate.environment_id == environment_id)

        result = await db.execute(query)
        await db.commit()
        return result.rowcount or 0
