"""Pydantic schemas for batch container updates."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from dockgate.services.vulnerability_policy import ScanSummary, VulnerabilityCriteria

EventType = Literal[
    "start",
    "progress",
    "pull_log",
    "scan_start",
    "scan_log",
    "scan_complete",
    "blocked",
    "complete",
    "error",
]

Step = Literal[
    "pulling",
    "scanning",
    "stopping",
    "removing",
    "creating",
    "starting",
    "done",
    "failed",
    "blocked",
    "skipped",
]

Outcome = Literal["success", "failed", "blocked", "skipped"]

# Steps that end a container's pipeline, mapped to the outcome they record
TERMINAL_STEPS: dict[str, str] = {
    "done": "success",
    "failed": "failed",
    "blocked": "blocked",
    "skipped": "skipped",
}


class CamelModel(BaseModel):
    """Schema serialised with camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ScanCounts(CamelModel):
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    negligible: int = 0
    unknown: int = 0

    @classmethod
    def from_summary(cls, summary: ScanSummary) -> "ScanCounts":
        return cls(**summary.to_dict())


class ScannerCounts(ScanCounts):
    scanner: str


class BatchSummary(CamelModel):
    total: int
    success: int = 0
    failed: int = 0
    blocked: int = 0
    skipped: int = 0

    def describe(self) -> str:
        message = f"Updated {self.success} of {self.total} containers"
        if self.blocked:
            message += f" ({self.blocked} blocked)"
        if self.skipped:
            message += f" ({self.skipped} skipped)"
        return message


class ProgressEvent(CamelModel):
    """One event on a batch update stream."""

    type: EventType
    step: Step | None = None
    container_id: str | None = None
    container_name: str | None = None
    message: str | None = None
    current: int | None = None
    total: int | None = None
    success: bool | None = None
    error: str | None = None
    summary: BatchSummary | None = None
    pull_status: str | None = None
    pull_id: str | None = None
    pull_progress: str | None = None
    scan_result: ScanCounts | None = None
    scanner_results: list[ScannerCounts] | None = None
    block_reason: str | None = None
    scanner: str | None = None

    @property
    def outcome(self) -> str | None:
        """Outcome recorded by this event, if it ends a container's pipeline."""
        if self.type in ("progress", "blocked") and self.step in TERMINAL_STEPS:
            return TERMINAL_STEPS[self.step]
        return None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class BatchUpdateRequest(CamelModel):
    """Body of the batch update endpoints."""

    container_ids: list[str] | None = None
    vulnerability_criteria: VulnerabilityCriteria = VulnerabilityCriteria.NEVER


class ContainerUpdateResult(CamelModel):
    container_id: str
    container_name: str
    outcome: Outcome
    error: str | None = None
    block_reason: str | None = None


class BatchUpdateResponse(CamelModel):
    summary: BatchSummary
    results: list[ContainerUpdateResult] = Field(default_factory=list)


class PendingUpdateSchema(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    container_id: str
    container_name: str
    current_image: str
    environment_id: int | None = None
    checked_at: datetime | None = None


class UpdateCheckResult(CamelModel):
    """Registry comparison for one container."""

    container_id: str
    container_name: str
    image: str
    has_update: bool = False
    is_local_image: bool = False
    current_digest: str | None = None
    registry_digest: str | None = None
    error: str | None = None


class UpdateCheckResponse(CamelModel):
    checked: int = 0
    updates_available: int = 0
    errors: int = 0
    results: list[UpdateCheckResult] = Field(default_factory=list)
