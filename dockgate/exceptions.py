"""Custom exceptions for the Dockgate update pipeline.

Every exception here is caught at the single-container boundary of a batch
and converted into a terminal progress event. None of them abort a batch.
"""


class UpdatePipelineError(Exception):
    """Base class for errors raised while updating one container."""

    # Outcome recorded for the container when this error ends its pipeline
    outcome = "failed"


class ContainerNotFoundError(UpdatePipelineError):
    """Raised when the container vanished before it could be processed."""

    def __init__(self, container_id: str):
        self.container_id = container_id
        super().__init__("Container not found")


class PullFailedError(UpdatePipelineError):
    """Raised when the runtime could not pull the container's image."""

    def __init__(self, image: str, reason: str):
        self.image = image
        self.reason = reason
        super().__init__(f"Pull failed: {reason}")


class ImageResolutionError(UpdatePipelineError):
    """Raised when the freshly pulled image id cannot be resolved by tag."""

    def __init__(self, image: str):
        self.image = image
        super().__init__("Failed to get new image ID after pull")


class ScanFailedError(UpdatePipelineError):
    """Raised when the vulnerability scanner could not complete a scan.

    The temporary tag is always removed before this surfaces.
    """

    def __init__(self, image: str, reason: str):
        self.image = image
        self.reason = reason
        super().__init__(f"Scan failed: {reason}")


class SwapFailedError(UpdatePipelineError):
    """Raised when stop, remove, create or start of the container fails."""

    def __init__(self, step: str, reason: str):
        self.step = step
        self.reason = reason
        super().__init__(f"Failed while {step} container: {reason}")


class ScannerOutputError(Exception):
    """Raised when scanner output cannot be parsed as a JSON report."""
    pass
