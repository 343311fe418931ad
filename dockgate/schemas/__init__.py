"""Pydantic schemas for API validation."""

from dockgate.schemas.update import (
    BatchSummary,
    BatchUpdateRequest,
    BatchUpdateResponse,
    ContainerUpdateResult,
    PendingUpdateSchema,
    ProgressEvent,
    ScanCounts,
    ScannerCounts,
    UpdateCheckResponse,
    UpdateCheckResult,
)

__all__ = [
    "BatchSummary",
    "BatchUpdateRequest",
    "BatchUpdateResponse",
    "ContainerUpdateResult",
    "PendingUpdateSchema",
    "ProgressEvent",
    "ScanCounts",
    "ScannerCounts",
    "UpdateCheckResponse",
    "UpdateCheckResult",
]
