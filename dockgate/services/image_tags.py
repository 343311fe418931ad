"""Temporary-tag handling for scanning freshly pulled images.

A pull overwrites ``repo:tag`` with the new image. Before the new image has
passed the vulnerability policy, the original tag is pointed back at the image
the container is running, and the new image is only reachable through a
temporary ``repo:tag-dockgate-pending`` tag. Once a decision is reached, the
original tag is promoted to the new image (approval) or left alone (block,
scan failure), and the temporary tag is always removed.
"""

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator
from dataclasses import dataclass

from dockgate.exceptions import ImageResolutionError
from dockgate.services.docker_runtime import DockerRuntime, RuntimeContext
from dockgate.utils.error_handling import log_and_continue

logger = logging.getLogger(__name__)

TEMP_TAG_SUFFIX = "-dockgate-pending"


def is_digest_based_image(image: str) -> bool:
    """Digest references are immutable, so there is nothing to re-tag."""
    return "@sha256:" in image


def parse_image_name_and_tag(image: str) -> tuple[str, str]:
    """Split an image reference into repository and tag.

    - ``nginx`` -> (``nginx``, ``latest``)
    - ``nginx:1.25`` -> (``nginx``, ``1.25``)
    - ``registry:5000/app`` -> (``registry:5000/app``, ``latest``)
    - ``registry:5000/app:v1`` -> (``registry:5000/app``, ``v1``)
    - ``nginx@sha256:...`` -> (``nginx@sha256:...``, ``""``)
    """
    if "@sha256:" in image:
        return image, ""

    repo, sep, tag = image.rpartition(":")
    # A colon followed by a slash belongs to a registry port, not a tag
    if not sep or "/" in tag:
        return image, "latest"
    return repo, tag


def image_repository(image: str) -> str:
    """Repository path of a reference, without tag or digest."""
    repo, _ = parse_image_name_and_tag(image.split("@", 1)[0])
    return repo


def matches_image_pattern(image: str, pattern: str) -> bool:
    """True if the repository of ``image`` is ``pattern`` or ends in ``/pattern``.

    Matching is on whole path segments and case-insensitive: ``dockgate``
    matches ``dockgate`` and ``ghcr.io/acme/dockgate:2`` but not
    ``acme/dockgate-exporter``; ``acme/dockgate`` also pins the owner.
    """
    pattern = (pattern or "").strip().strip("/").lower()
    if not pattern:
        return False
    repo = image_repository(image).lower()
    return repo == pattern or repo.endswith("/" + pattern)


def get_temp_image_tag(image: str) -> str:
    """Return the temporary reference used to scan a newly pulled image."""
    if "@" in image:
        return image
    repo, tag = parse_image_name_and_tag(image)
    return f"{repo}:{tag}{TEMP_TAG_SUFFIX}"


@dataclass
class StagedImage:
    """A pulled image reachable only through its temporary tag."""

    runtime: DockerRuntime
    ctx: RuntimeContext
    image: str
    new_image_id: str
    temp_tag: str
    promoted: bool = False

    async def promote(self) -> None:
        """Point the original tag at the approved image."""
        repo, tag = parse_image_name_and_tag(self.image)
        await self.runtime.tag_image(self.ctx, self.new_image_id, repo, tag)
        self.promoted = True
        logger.info(f"Promoted {self.new_image_id[:19]} to {self.image}")


async def _remove_temp_tag(runtime: DockerRuntime, ctx: RuntimeContext, temp_tag: str) -> None:
    try:
        await runtime.remove_image(ctx, temp_tag)
        logger.debug(f"Removed temporary tag {temp_tag}")
    except Exception as e:
        log_and_continue(logger, e, f"Failed to remove temporary tag {temp_tag}")


@asynccontextmanager
async def staged_image(
    runtime: DockerRuntime,
    ctx: RuntimeContext,
    image: str,
    current_image_id: str,
) -> AsyncIterator[StagedImage]:
    """Move a freshly pulled image behind a temporary tag for scanning.

    On exit the temporary tag is removed whatever happened inside the block.
    Call ``promote()`` inside the block to make the original tag resolve to
    the new image.

    Raises:
        ImageResolutionError: If the pulled image cannot be found by its tag
    """
    new_image_id = await runtime.get_image_id_by_tag(ctx, image)
    if not new_image_id:
        raise ImageResolutionError(image)

    repo, tag = parse_image_name_and_tag(image)
    temp_tag = get_temp_image_tag(image)
    temp_repo, temp_tag_name = parse_image_name_and_tag(temp_tag)

    try:
        # Keep the original tag on the image the container is running
        try:
            await runtime.tag_image(ctx, current_image_id, repo, tag)
        except Exception as e:
            log_and_continue(logger, e, f"Could not restore {image} to current image (it may have been pruned)")

        await runtime.tag_image(ctx, new_image_id, temp_repo, temp_tag_name)
        logger.info(f"Staged {new_image_id[:19]} as {temp_tag}")

        yield StagedImage(
            runtime=runtime,
            ctx=ctx,
            image=image,
            new_image_id=new_image_id,
            temp_tag=temp_tag,
        )
    finally:
        await _remove_temp_tag(runtime, ctx, temp_tag)
