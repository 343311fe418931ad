"""On-demand discovery of containers whose image has a newer build.

A container has an update when the manifest digest its registry serves for
the container's image reference differs from every repo digest of the image
the container runs. Containers found outdated get a pending-update marker,
which the update pipeline clears once the container has been swapped.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from dockgate.schemas.update import UpdateCheckResponse, UpdateCheckResult
from dockgate.services.docker_runtime import DockerRuntime, RuntimeContext
from dockgate.services.scan_store import ScanStore
from dockgate.services.settings_service import runtime_context
from dockgate.utils.error_handling import safe_rollback
from dockgate.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageUpdateCheck:
    has_update: bool = False
    is_local_image: bool = False
    current_digest: str | None = None
    registry_digest: str | None = None
    error: str | None = None


def _digest_of(repo_digest: str) -> str | None:
    """``repo@sha256:...`` -> ``sha256:...``"""
    _, sep, digest = repo_digest.rpartition("@")
    return digest if sep else None


async def check_image_update_available(
    runtime: DockerRuntime,
    ctx: RuntimeContext,
    image: str,
    current_image_id: str,
) -> ImageUpdateCheck:
    """Compare the registry's digest for ``image`` with the running image.

    Images without repo digests were built or loaded locally and are never
    reported as outdated.
    """
    repo_digests = await runtime.get_repo_digests(ctx, current_image_id)
    if repo_digests is None:
        return ImageUpdateCheck(error="Could not inspect current image")

    # One image can carry several repo digests (same content under several tags)
    local_digests = [d for d in (_digest_of(rd) for rd in repo_digests) if d]
    if not local_digests:
        return ImageUpdateCheck(is_local_image=True, current_digest=current_image_id)

    registry_digest = await runtime.get_registry_digest(ctx, image)
    if not registry_digest:
        return ImageUpdateCheck(current_digest=repo_digests[0], error="Could not query registry")

    has_update = registry_digest not in local_digests
    return ImageUpdateCheck(
        has_update=has_update,
        current_digest=repo_digests[0],
        registry_digest=registry_digest if has_update else None,
    )


class UpdateChecker:
    """Service for checking containers of an environment for newer images."""

    @staticmethod
    async def check_environment(
        db: AsyncSession,
        runtime: DockerRuntime,
        environment_id: int | None = None,
    ) -> UpdateCheckResponse:
        """Check every container of an environment and rebuild its pending markers.

        Markers are cleared first and re-added for each container found
        outdated, so a marker never outlives the update it announced.
        """
        ctx = await runtime_context(db, environment_id)
        response = UpdateCheckResponse()

        await ScanStore.clear_pending_container_updates(db, environment_id)
        containers = await runtime.list_containers(ctx, all=True)
        logger.info(f"Checking {len(containers)} container(s) for updates in environment {environment_id}")

        for container in containers:
            name = sanitize_log_message(container.name)
            try:
                snapshot = await runtime.inspect_container(ctx, container.id)
                if not snapshot.image:
                    logger.debug(f"Skipping {name}: no image reference")
                    continue

                response.checked += 1
                check = await check_image_update_available(runtime, ctx, snapshot.image, snapshot.image_id)
                result = UpdateCheckResult(
                    container_id=snapshot.id,
                    container_name=snapshot.name,
                    image=snapshot.image,
                    has_update=check.has_update,
                    is_local_image=check.is_local_image,
                    current_digest=check.current_digest,
                    registry_digest=check.registry_digest,
                    error=check.error,
                )

                if check.error:
                    logger.warning(f"Update check for {name} ({snapshot.image}) failed: {check.error}")
                    response.errors += 1
                elif check.has_update:
                    await ScanStore.add_pending_container_update(
                        db, environment_id, snapshot.id, snapshot.name, snapshot.image
                    )
                    response.updates_available += 1
                    logger.info(f"Update available for {name} ({snapshot.image})")

                response.results.append(result)
            except Exception as e:
                logger.error(f"Error checking {name} for updates: {e}")
                await safe_rollback(logger, db, f"Update check of {name}")
                response.errors += 1
                response.results.append(
                    UpdateCheckResult(
                        container_id=container.id,
                        container_name=container.name,
                        image=container.image,
                        error=str(e),
                    )
                )

        logger.info(
            f"Update check finished: {response.checked} checked, "
            f"{response.updates_available} update(s) available, {response.errors} error(s)"
        )
        return response
