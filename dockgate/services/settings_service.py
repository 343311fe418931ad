"""Settings service for database-first configuration."""

import logging
import os
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dockgate.models import Setting
from dockgate.services.docker_runtime import RuntimeContext
from dockgate.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)

DEFAULT_GRYPE_ARGS = "-o json -v {image}"
DEFAULT_TRIVY_ARGS = "image --format json {image}"


def environment_key(key: str, environment_id: int | None) -> str:
    """Build the storage key for an environment-scoped override."""
    if environment_id is None:
        return key
    return f"env:{environment_id}:{key}"


class SettingsService:
    """Manage application settings in database."""

    # Default settings with descriptions
    DEFAULTS: dict[str, dict[str, Any]] = {
        # Docker
        "docker_host": {
            "value": os.getenv("DOCKER_HOST", "unix:///var/run/docker.sock"),
            "category": "docker",
            "description": "Docker socket path or DOCKER_HOST URL (may be overridden per environment)",
        },
        "self_image_pattern": {
            "value": os.getenv("DOCKGATE_SELF_IMAGE", "dockgate"),
            "category": "docker",
            "description": "Repository name or owner/name of Dockgate's own image (never self-updated)",
        },
        # Vulnerability scanning
        "vulnerability_scanner": {
            "value": "none",
            "category": "scanner",
            "description": "Scanner used before swapping containers: none, grype, trivy, or both",
        },
        "default_grype_args": {
            "value": DEFAULT_GRYPE_ARGS,
            "category": "scanner",
            "description": "Grype CLI arguments ({image} is replaced with the image reference)",
        },
        "default_trivy_args": {
            "value": DEFAULT_TRIVY_ARGS,
            "category": "scanner",
            "description": "Trivy CLI arguments ({image} is replaced with the image reference)",
        },
        "grype_image": {
            "value": "anchore/grype:latest",
            "category": "scanner",
            "description": "Container image used to run Grype",
        },
        "trivy_image": {
            "value": "aquasec/trivy:latest",
            "category": "scanner",
            "description": "Container image used to run Trivy",
        },
        # Updates
        "update_keepalive_seconds": {
            "value": "5",
            "category": "updates",
            "description": "Seconds between SSE keepalive comments during batch updates",
        },
    }

    @staticmethod
    async def init_defaults(db: AsyncSession) -> None:
        """Initialize default settings if they don't exist."""
        for key, config in SettingsService.DEFAULTS.items():
            result = await db.execute(select(Setting).where(Setting.key == key))
            if not result.scalar_one_or_none():
                setting = Setting(
                    key=key,
                    value=config["value"],
                    category=config["category"],
                    description=config["description"],
                )
                db.add(setting)

        await db.commit()

    @classmethod
    async def get(cls, db: AsyncSession, key: str, default: str | None = None) -> str | None:
        """Get setting value by key.

        Args:
            db: Database session
            key: Setting key
            default: Default value if setting not found

        Returns:
            Stored value, the DEFAULTS value, or default
        """
        result = await db.execute(select(Setting).where(Setting.key == key))
        setting = result.scalar_one_or_none()

        if setting:
            return setting.value

        if default is not None:
            return default

        config = cls.DEFAULTS.get(key)
        return config["value"] if config else None

    @classmethod
    async def get_for_environment(
        cls,
        db: AsyncSession,
        key: str,
        environment_id: int | None,
        default: str | None = None,
    ) -> str | None:
        """Get an environment-scoped setting, falling back to the global value."""
        if environment_id is not None:
            result = await db.execute(
                select(Setting).where(Setting.key == environment_key(key, environment_id))
            )
            setting = result.scalar_one_or_none()
            if setting:
                return setting.value

        return await cls.get(db, key, default)

    @staticmethod
    async def get_bool(db: AsyncSession, key: str, default: bool = False) -> bool:
        """Get setting as boolean."""
        value = await SettingsService.get(db, key)
        if value is None:
            return default
        return value.lower() in ("true", "1", "yes", "on")

    @staticmethod
    async def get_int(db: AsyncSession, key: str, default: int = 0) -> int:
        """Get setting as integer."""
        value = await SettingsService.get(db, key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            logger.warning(
                f"Setting '{sanitize_log_message(key)}' is not an integer: "
                f"{sanitize_log_message(value)}"
            )
            return default

    @classmethod
    async def set(
        cls,
        db: AsyncSession,
        key: str,
        value: str,
        environment_id: int | None = None,
    ) -> Setting:
        """Set setting value, optionally scoped to one environment.

        Returns:
            Updated Setting object
        """
        storage_key = environment_key(key, environment_id)
        result = await db.execute(select(Setting).where(Setting.key == storage_key))
        setting = result.scalar_one_or_none()

        config = cls.DEFAULTS.get(key, {})

        if setting:
            setting.value = value
        else:
            setting = Setting(
                key=storage_key,
                value=value,
                category=config.get("category", "general"),
                description=config.get("description", ""),
            )
            db.add(setting)

        await db.commit()
        await db.refresh(setting)
        logger.debug(f"Setting '{sanitize_log_message(storage_key)}' updated")
        return setting


async def runtime_context(db: AsyncSession, environment_id: int | None) -> RuntimeContext:
    """Docker host of an environment, from its docker_host setting."""
    docker_host = await SettingsService.get_for_environment(db, "docker_host", environment_id)
    if docker_host:
        return RuntimeContext(environment_id=environment_id, docker_host=docker_host)
    return RuntimeContext(environment_id=environment_id)
