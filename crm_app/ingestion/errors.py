"""Exception types raised by the ingestion pipeline."""

from __future__ import annotations

from config.survivorship import SurvivorshipConfigError


class IngestionError(RuntimeError):
    """Base exception for ingestion failures."""


class CSVParseError(IngestionError):
    """Raised when an uploaded CSV payload cannot be parsed."""


class JobNotFoundError(IngestionError):
    """Raised when a job id does not resolve to an ``IngestionJob`` row."""

    def __init__(self, job_id: int) -> None:
        super().__init__(f"Ingestion job {job_id} not found.")
        self.job_id = job_id


class JobClaimLostError(IngestionError):
    """
    Raised when a runner's checkpoint finds its claim on the job gone.

    Another attempt took the job over (or failed it), so this runner must stop
    without writing anything further.
    """

    def __init__(self, job_id: int) -> None:
        super().__init__(f"Ingestion job {job_id} is no longer held by this attempt.")
        self.job_id = job_id


class DatasetNotFoundError(IngestionError):
    """Raised when the dataset targeted by a job does not exist."""

    def __init__(self, dataset_id: int | None) -> None:
        super().__init__(f"Dataset {dataset_id} not found.")
        self.dataset_id = dataset_id


class RowValidationError(IngestionError):
    """
    Raised by row processors for a single bad row.

    The message is what ends up in the job's ``errors`` list, so keep it short
    and user facing.
    """


class FieldMappingError(IngestionError):
    """Raised when user supplied field mappings are malformed."""


__all__ = [
    "CSVParseError",
    "DatasetNotFoundError",
    "FieldMappingError",
    "IngestionError",
    "JobClaimLostError",
    "JobNotFoundError",
    "RowValidationError",
    "SurvivorshipConfigError",
]
