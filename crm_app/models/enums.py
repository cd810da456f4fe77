# crm_app/models/enums.py
"""
Enums shared by the contact and ingestion models.
"""

import enum


class EligibilityStatus(str, enum.Enum):
    """Campaign eligibility of a contact."""

    ELIGIBLE = "Eligible"
    INELIGIBLE_GEOGRAPHY = "Ineligible_Geography"
    INELIGIBLE_TITLE = "Ineligible_Title"
    INELIGIBLE_EMAIL_INVALID = "Ineligible_Email_Invalid"
    INELIGIBLE_EMAIL_RISKY = "Ineligible_Email_Risky"
    INELIGIBLE_EMAIL_DISPOSABLE = "Ineligible_Email_Disposable"
    PENDING_EMAIL_VALIDATION = "Pending_Email_Validation"
    INELIGIBLE_RECENTLY_SUBMITTED = "Ineligible_Recently_Submitted"
    EXCLUDED = "Excluded"


class EmailStatus(str, enum.Enum):
    """Outcome of email verification, as imported from validation results."""

    UNKNOWN = "unknown"
    OK = "ok"
    INVALID = "invalid"
    RISKY = "risky"
    ACCEPT_ALL = "accept_all"
    DISPOSABLE = "disposable"


class SourceType(str, enum.Enum):
    """Where a contact came from."""

    CLIENT_PROVIDED = "Client_Provided"
    NEW_SOURCED = "New_Sourced"


def enum_values(enum_cls):
    """Persist enum values rather than member names."""
    return [member.value for member in enum_cls]
