"""
Exception hierarchy for the import pipeline.

Every error the pipeline raises on purpose derives from ``ImporterError`` so
task wrappers and the CLI can tell pipeline failures apart from programming
errors.
"""

from __future__ import annotations

from datetime import datetime


class ImporterError(RuntimeError):
    """Base class for pipeline failures."""


class ImportJobNotFound(ImporterError):
    def __init__(self, import_job_id: int):
        super().__init__(f"Import job {import_job_id} not found.")
        self.import_job_id = import_job_id


class InvalidStageTransition(ImporterError):
    """Raised when a stage change is not part of the valid transition graph."""

    def __init__(self, from_stage: str, to_stage: str):
        super().__init__(f"Invalid stage transition from '{from_stage}' to '{to_stage}'.")
        self.from_stage = from_stage
        self.to_stage = to_stage


class StageConflict(ImporterError):
    """Raised when another worker moved the job before our conditional update."""

    def __init__(self, import_job_id: int, expected_stage: str):
        super().__init__(f"Import job {import_job_id} is no longer in stage '{expected_stage}'.")
        self.import_job_id = import_job_id
        self.expected_stage = expected_stage


class StageQueueError(ImporterError):
    """Raised when the task for a committed stage could not be enqueued; the job has been failed."""

    def __init__(self, import_job_id: int, stage: str, reason: str | None):
        super().__init__(f"Failed to queue the {stage} task for import job {import_job_id}: {reason}")
        self.import_job_id = import_job_id
        self.stage = stage
        self.reason = reason


class UniqueIdError(ImporterError, ValueError):
    """Raised when a row's unique identifier cannot be derived."""


class BatchReaderError(ImporterError):
    """Raised when a source file cannot be opened or parsed."""


class UnsupportedFileType(BatchReaderError):
    def __init__(self, path: str):
        super().__init__(f"Unsupported file type for '{path}'.")
        self.path = path


class UrlFetchError(ImporterError):
    """Raised when a remote import file cannot be downloaded or is not importable."""

    def __init__(self, url: str, message: str):
        super().__init__(f"Could not fetch '{url}': {message}")
        self.url = url


class SchemaApprovalError(ImporterError):
    """Raised when an approval action does not apply to the job's state."""


class GeocodingError(ImporterError):
    """Base class for geocoding failures."""


class ProviderError(GeocodingError):
    """A single provider call failed; the orchestrator falls through to the next one."""

    def __init__(self, provider: str, message: str, *, rate_limited: bool = False):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.rate_limited = rate_limited


class GeocodingFailed(GeocodingError):
    """All providers failed for an address."""

    def __init__(self, address: str, failures: list[str] | None = None):
        detail = "; ".join(failures or ()) or "no providers available"
        super().__init__(f"All geocoding providers failed for '{address}': {detail}")
        self.address = address
        self.failures = list(failures or ())


class ProviderConfigError(ImporterError):
    """Raised when a geocoding provider configuration file is invalid."""


class QuotaExceededError(ImporterError):
    """Raised by ``QuotaService.validate_quota`` when a request would exceed a limit."""

    status_code = 429

    def __init__(
        self,
        quota_type: str,
        current: int,
        limit: int,
        reset_time: datetime | None = None,
        message: str | None = None,
    ):
        super().__init__(message or f"Quota exceeded for {quota_type}: {current}/{limit}")
        self.quota_type = quota_type
        self.current = current
        self.limit = limit
        self.reset_time = reset_time

    def to_dict(self) -> dict:
        return {
            "error": str(self),
            "quota_type": self.quota_type,
            "current": self.current,
            "limit": self.limit,
            "reset_time": self.reset_time.isoformat() if self.reset_time else None,
        }
