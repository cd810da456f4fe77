"""
Ingestion pipeline: normalization, account resolution, suppression,
eligibility, survivorship upserts and the batch job runner.
"""

from __future__ import annotations

from .account_resolver import AccountResolution, AccountResolutionCache, AccountResolver, score_account_match
from .eligibility import EligibilityResult, EligibilityRules, evaluate_eligibility
from .exclusion import ExclusionStats, enforce_submission_exclusion
from .job_service import JobFilters, JobListResult, JobService, create_job, dispatch_job, serialize_job_status
from .processors import (
    ContactRowProcessor,
    ProcessingContext,
    RowOutcome,
    SubmissionRowProcessor,
    ValidationResultRowProcessor,
    build_processor,
)
from .runner import IngestionJobRunner, JobOutcome, find_stale_jobs, resume_stale_jobs, run_job
from .suppression import SuppressionMatch, SuppressionMatcher, add_suppression
from .survivorship import FieldChange, merge_fields
from .upsert import Provenance, UpsertResult, upsert, upsert_account, upsert_contact

__all__ = [
    "AccountResolution",
    "AccountResolutionCache",
    "AccountResolver",
    "ContactRowProcessor",
    "EligibilityResult",
    "EligibilityRules",
    "ExclusionStats",
    "FieldChange",
    "IngestionJobRunner",
    "JobFilters",
    "JobListResult",
    "JobOutcome",
    "JobService",
    "ProcessingContext",
    "Provenance",
    "RowOutcome",
    "SubmissionRowProcessor",
    "SuppressionMatch",
    "SuppressionMatcher",
    "UpsertResult",
    "ValidationResultRowProcessor",
    "add_suppression",
    "build_processor",
    "create_job",
    "dispatch_job",
    "enforce_submission_exclusion",
    "evaluate_eligibility",
    "find_stale_jobs",
    "merge_fields",
    "resume_stale_jobs",
    "run_job",
    "score_account_match",
    "serialize_job_status",
    "upsert",
    "upsert_account",
    "upsert_contact",
]
