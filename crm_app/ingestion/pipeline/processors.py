"""
Row processors for the three ingestion job types.

Each processor turns one parsed CSV row into database writes inside the
runner's batch transaction. Every check that can reject a row runs before the
first write of that row, so a :class:`RowValidationError` never leaves a
half-written contact behind.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Callable, Literal, Mapping

from sqlalchemy import func
from sqlalchemy.orm import Session

from config.survivorship import SurvivorshipProfile
from crm_app.models import (
    Contact,
    Dataset,
    EligibilityStatus,
    EmailStatus,
    IngestionJobType,
    LeadSubmission,
    SourceType,
)
from crm_app.models.base import utcnow

from ..adapters.csv_rows import CSVRow
from ..contracts.fields import CanonicalField, ColumnMapping, MappedRow, map_row
from ..errors import RowValidationError
from .account_resolver import AccountQuery, AccountResolution, AccountResolver
from .eligibility import EligibilityResult, EligibilityRules, eligibility_for_email_status, evaluate_eligibility
from .normalize import (
    clean_text,
    email_domain,
    is_personal_domain,
    normalize_email,
    normalize_email_status,
)
from .suppression import SuppressionMatch, SuppressionMatcher, build_suppression_keys
from .upsert import (
    Provenance,
    coerce_source_type,
    create_contact,
    derive_full_name,
    find_contacts_by_email,
    merge_account,
    merge_contact,
)

RowAction = Literal["created", "updated", "unchanged"]

# Canonical account columns and the Account attribute each one feeds.
ACCOUNT_COLUMNS: Mapping[CanonicalField, str] = {
    CanonicalField.INDUSTRY: "industry",
    CanonicalField.ANNUAL_REVENUE: "annual_revenue",
    CanonicalField.EMPLOYEES_SIZE_RANGE: "employees_size_range",
    CanonicalField.DESCRIPTION: "description",
    CanonicalField.YEAR_FOUNDED: "year_founded",
    CanonicalField.SIC_CODE: "sic_code",
    CanonicalField.NAICS_CODE: "naics_code",
    CanonicalField.COMPANY_LINKEDIN_URL: "linkedin_url",
    CanonicalField.TECH_STACK: "tech_stack",
    CanonicalField.HQ_ADDRESS_1: "hq_address_1",
    CanonicalField.HQ_ADDRESS_2: "hq_address_2",
    CanonicalField.HQ_ADDRESS_3: "hq_address_3",
    CanonicalField.HQ_CITY: "hq_city",
    CanonicalField.HQ_STATE: "hq_state",
    CanonicalField.HQ_POSTAL_CODE: "hq_postal_code",
    CanonicalField.HQ_COUNTRY: "hq_country",
    CanonicalField.MAIN_PHONE: "main_phone",
}

CONTACT_COLUMNS: tuple[CanonicalField, ...] = (
    CanonicalField.FULL_NAME,
    CanonicalField.FIRST_NAME,
    CanonicalField.LAST_NAME,
    CanonicalField.TITLE,
    CanonicalField.EMAIL,
    CanonicalField.DIRECT_PHONE,
    CanonicalField.MOBILE_PHONE,
    CanonicalField.LINKEDIN_URL,
    CanonicalField.CONTACT_ADDRESS_1,
    CanonicalField.CONTACT_ADDRESS_2,
    CanonicalField.CONTACT_ADDRESS_3,
    CanonicalField.CONTACT_CITY,
    CanonicalField.CONTACT_STATE,
    CanonicalField.CONTACT_POSTAL_CODE,
    CanonicalField.CONTACT_COUNTRY,
    CanonicalField.CAV_ID,
    CanonicalField.CAV_USER_ID,
    CanonicalField.TAGS,
    CanonicalField.INTENT_TOPICS,
)

# Contact fields filled from the account HQ when the contact left them blank.
HQ_INHERITED_FIELDS: tuple[tuple[str, str], ...] = (
    ("contact_address_1", "hq_address_1"),
    ("contact_address_2", "hq_address_2"),
    ("contact_address_3", "hq_address_3"),
    ("contact_city", "hq_city"),
    ("contact_state", "hq_state"),
    ("contact_postal_code", "hq_postal_code"),
    ("direct_phone", "main_phone"),
)

_CLIENT_PROVIDED_TOKENS = frozenset({"client_provided", "client provided"})


@dataclass(frozen=True)
class RowOutcome:
    action: RowAction
    entity_id: int | None = None


@dataclass
class ProcessingContext:
    """Everything a processor needs that outlives a single row."""

    session: Session
    dataset: Dataset
    mapping: ColumnMapping
    provenance: Provenance
    profile: SurvivorshipProfile
    update_mode: bool = False
    now_fn: Callable[[], datetime] = utcnow
    resolver: AccountResolver | None = None
    rules: EligibilityRules = field(default_factory=EligibilityRules)
    # Accounts whose columns were already taken from a row of this job.
    merged_account_ids: set[int] = field(default_factory=set)

    def __post_init__(self) -> None:
        if self.resolver is None:
            self.resolver = AccountResolver(self.session, provenance=self.provenance)

    @property
    def dataset_id(self) -> int:
        return self.dataset.id


class RowProcessor:
    """Base class; subclasses implement :meth:`process` for one job type."""

    job_type: IngestionJobType

    def __init__(self, context: ProcessingContext) -> None:
        self.context = context
        self.session = context.session

    def map(self, row: CSVRow) -> MappedRow:
        return map_row(row.values, self.context.mapping)

    def process(self, row: CSVRow) -> RowOutcome:  # pragma: no cover - interface
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


def _client_provided(mapped: MappedRow) -> bool:
    token = (mapped.get(CanonicalField.SOURCE_TYPE) or "").strip().lower()
    return token in _CLIENT_PROVIDED_TOKENS


def _same_country(left: Any, right: Any) -> bool:
    left_key = (clean_text(left) or "").lower()
    right_key = (clean_text(right) or "").lower()
    return bool(left_key) and left_key == right_key


class ContactRowProcessor(RowProcessor):
    """Import or merge one contact row, resolving its account on the way."""

    job_type = IngestionJobType.CONTACTS

    def __init__(self, context: ProcessingContext) -> None:
        super().__init__(context)
        self.matcher = SuppressionMatcher(self.session, context.dataset_id)

    def process(self, row: CSVRow) -> RowOutcome:
        mapped = self.map(row)
        full_name = mapped.get(CanonicalField.FULL_NAME) or derive_full_name(
            mapped.get(CanonicalField.FIRST_NAME), mapped.get(CanonicalField.LAST_NAME)
        )
        if not full_name:
            raise RowValidationError("Missing name information")
        if not mapped.get(CanonicalField.CONTACT_COUNTRY):
            raise RowValidationError("Missing Contact Country - required field")

        email = mapped.get(CanonicalField.EMAIL)
        email_matches = find_contacts_by_email(self.session, email, dataset_id=self.context.dataset_id)
        if len(email_matches) > 1:
            raise RowValidationError(
                f"Ambiguous email match: {len(email_matches)} contacts share {normalize_email(email)}"
            )

        resolution = self.context.resolver.resolve(self._account_query(mapped, email))
        existing = email_matches[0] if email_matches else None
        if existing is None and (email is None or self.context.update_mode):
            existing = self._match_by_name(full_name, mapped.get(CanonicalField.CONTACT_COUNTRY), resolution)

        if existing is None:
            self._enforce_lead_cap(resolution)

        account_changed = self._merge_account_once(mapped, resolution)
        fields = self._contact_fields(mapped, full_name, resolution)
        suppression = self.matcher.match(
            build_suppression_keys(
                email=email,
                cav_id=fields.get("cav_id"),
                cav_user_id=fields.get("cav_user_id"),
                full_name=full_name,
                company=self._company_name(mapped, resolution),
            )
        )

        if existing is not None:
            if not self.context.update_mode:
                return RowOutcome("unchanged", existing.id)
            return self._update(existing, fields, suppression, account_changed)

        eligibility = self._eligibility(fields, suppression, None)
        fields.update(
            eligibility_status=eligibility.status,
            eligibility_reason=eligibility.reason,
            suppressed=suppression.suppressed,
            suppression_rule=suppression.rule,
        )
        contact = create_contact(self.session, fields, self.context.provenance, dataset_id=self.context.dataset_id)
        return RowOutcome("created", contact.id)

    def _update(
        self,
        contact: Contact,
        fields: dict[str, Any],
        suppression: SuppressionMatch,
        account_changed: bool,
    ) -> RowOutcome:
        if contact.cav_id or contact.cav_user_id:
            fields["source_type"] = SourceType.CLIENT_PROVIDED
        result = merge_contact(
            self.session, contact, fields, self.context.provenance, profile=self.context.profile
        )
        changed = account_changed or bool(result.changes)

        eligibility = self._eligibility(fields, suppression, contact)
        derived = {
            "eligibility_status": eligibility.status,
            "eligibility_reason": eligibility.reason,
            "suppressed": suppression.suppressed,
            "suppression_rule": suppression.rule,
        }
        for name, value in derived.items():
            if getattr(contact, name) != value:
                setattr(contact, name, value)
                changed = True

        return RowOutcome("updated" if changed else "unchanged", contact.id)

    def _merge_account_once(self, mapped: MappedRow, resolution: AccountResolution) -> bool:
        """
        Fold the row's account columns into the resolved account.

        Only the first row of a job that carries account values for an account
        is applied; later rows of the same account in that job are ignored, so
        re-running a file always converges on the same account values. A new
        account was seeded from its creating row, and outside update mode an
        existing account is never touched.
        """
        account = resolution.account
        if account is None or resolution.account_id in self.context.merged_account_ids:
            return False
        account_fields = self._account_fields(mapped)
        if not account_fields:
            return False
        self.context.merged_account_ids.add(resolution.account_id)
        if resolution.created or not self.context.update_mode:
            return False
        result = merge_account(
            self.session, account, account_fields, self.context.provenance, profile=self.context.profile
        )
        return bool(result.changes)

    def _account_query(self, mapped: MappedRow, email: str | None) -> AccountQuery:
        domain = mapped.get(CanonicalField.DOMAIN)
        if not domain:
            candidate = email_domain(email)
            if candidate and not is_personal_domain(candidate):
                domain = candidate
        return AccountQuery(
            domain=domain,
            company_name=mapped.get(CanonicalField.COMPANY_NAME),
            hq_city=mapped.get(CanonicalField.HQ_CITY),
            hq_state=mapped.get(CanonicalField.HQ_STATE),
            hq_country=mapped.get(CanonicalField.HQ_COUNTRY),
            hq_fields=self._account_fields(mapped),
        )

    @staticmethod
    def _account_fields(mapped: MappedRow) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        for canonical, attribute in ACCOUNT_COLUMNS.items():
            value = mapped.get(canonical)
            if value is not None:
                fields[attribute] = value
        return fields

    @staticmethod
    def _company_name(mapped: MappedRow, resolution: AccountResolution) -> str | None:
        company = mapped.get(CanonicalField.COMPANY_NAME)
        if company:
            return company
        if resolution.account is not None:
            return resolution.account.name
        return None

    def _match_by_name(self, full_name: str, country: str, resolution: AccountResolution) -> Contact | None:
        if resolution.account_id is None or resolution.created:
            return None
        matches = (
            self.session.query(Contact)
            .filter(
                Contact.dataset_id == self.context.dataset_id,
                Contact.deleted_at.is_(None),
                Contact.account_id == resolution.account_id,
                func.lower(func.trim(Contact.full_name)) == full_name.strip().lower(),
                func.lower(func.trim(Contact.contact_country)) == country.strip().lower(),
            )
            .order_by(Contact.id)
            .limit(2)
            .all()
        )
        if len(matches) > 1:
            raise RowValidationError(f"Ambiguous name match for {full_name} ({country})")
        return matches[0] if matches else None

    def _enforce_lead_cap(self, resolution: AccountResolution) -> None:
        cap = self.context.rules.lead_cap_per_account
        if cap is None or resolution.account_id is None or resolution.created:
            return
        current = (
            self.session.query(func.count(Contact.id))
            .filter(
                Contact.dataset_id == self.context.dataset_id,
                Contact.account_id == resolution.account_id,
                Contact.deleted_at.is_(None),
            )
            .scalar()
        )
        if current >= cap:
            name = resolution.account.name if resolution.account is not None else resolution.account_id
            raise RowValidationError(f"Lead cap reached for account {name} ({current}/{cap})")

    def _contact_fields(self, mapped: MappedRow, full_name: str, resolution: AccountResolution) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        for canonical in CONTACT_COLUMNS:
            value = mapped.get(canonical)
            if value is not None:
                fields[canonical.value] = value
        fields["full_name"] = full_name
        if mapped.custom_fields:
            fields["custom_fields"] = dict(mapped.custom_fields)
        if resolution.account_id is not None:
            fields["account_id"] = resolution.account_id

        source_type = coerce_source_type(fields.get("cav_id"), fields.get("cav_user_id"))
        if source_type == SourceType.NEW_SOURCED and _client_provided(mapped):
            source_type = SourceType.CLIENT_PROVIDED
        fields["source_type"] = source_type

        account = resolution.account
        if account is not None and self._inherits_hq(fields.get("contact_country"), account):
            for contact_field, account_field in HQ_INHERITED_FIELDS:
                inherited = clean_text(getattr(account, account_field, None))
                if inherited and not fields.get(contact_field):
                    fields[contact_field] = inherited
        return fields

    @staticmethod
    def _inherits_hq(contact_country: Any, account: Any) -> bool:
        if not _same_country(contact_country, account.hq_country):
            return False
        required = (account.hq_address_1, account.hq_city, account.hq_postal_code, account.main_phone)
        return all(clean_text(value) for value in required)

    def _eligibility(
        self,
        fields: Mapping[str, Any],
        suppression: SuppressionMatch,
        existing: Contact | None,
    ) -> EligibilityResult:
        if suppression.suppressed:
            return EligibilityResult(EligibilityStatus.EXCLUDED, f"suppressed_by_{suppression.rule}")
        if existing is not None and existing.eligibility_status == EligibilityStatus.INELIGIBLE_RECENTLY_SUBMITTED:
            return EligibilityResult(existing.eligibility_status, existing.eligibility_reason or "recently_submitted")

        result = evaluate_eligibility(
            fields.get("title"), fields.get("contact_country"), self.context.rules, fields.get("email")
        )
        if existing is not None and result.status == EligibilityStatus.ELIGIBLE:
            incoming_email = normalize_email(fields.get("email"))
            known_status = existing.email_status
            if known_status not in (None, EmailStatus.UNKNOWN) and incoming_email in (None, existing.email_normalized):
                result = eligibility_for_email_status(result.status, known_status)
        return result


# ---------------------------------------------------------------------------
# Validation results
# ---------------------------------------------------------------------------


class ValidationResultRowProcessor(RowProcessor):
    """Apply one email verification result to every matching contact."""

    job_type = IngestionJobType.VALIDATION_RESULTS

    def process(self, row: CSVRow) -> RowOutcome:
        mapped = self.map(row)
        email = normalize_email(mapped.get(CanonicalField.EMAIL))
        if not email:
            raise RowValidationError("Missing email")
        raw_status = mapped.get(CanonicalField.EMAIL_STATUS)
        if not raw_status:
            raise RowValidationError("Missing email_status")

        contacts = find_contacts_by_email(self.session, email, dataset_id=self.context.dataset_id)
        if not contacts:
            raise RowValidationError(f"No contact found for email {email}")

        email_status = normalize_email_status(raw_status)
        changed = False
        for contact in contacts:
            result = eligibility_for_email_status(contact.eligibility_status, email_status)
            updates = {"email_status": email_status}
            if result.status != contact.eligibility_status:
                updates["eligibility_status"] = result.status
                updates["eligibility_reason"] = result.reason
            for name, value in updates.items():
                if getattr(contact, name) != value:
                    setattr(contact, name, value)
                    changed = True
        self.session.flush()
        return RowOutcome("updated" if changed else "unchanged", contacts[0].id)


# ---------------------------------------------------------------------------
# Submissions
# ---------------------------------------------------------------------------


def parse_submitted_at(value: Any, default: datetime) -> datetime:
    """
    Parse an ISO-8601 timestamp or date; naive values are taken as UTC.

    Raises:
        RowValidationError: the value is present but not ISO-8601.
    """
    token = clean_text(value)
    if token is None:
        return default
    if token.endswith(("Z", "z")):
        token = token[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(token)
    except ValueError:
        try:
            parsed = datetime.combine(date.fromisoformat(token), time.min)
        except ValueError as exc:
            raise RowValidationError(f"Invalid submitted_at '{value}'") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _insert_ignore_stmt(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        return None
    return insert(LeadSubmission.__table__)


class SubmissionRowProcessor(RowProcessor):
    """Record a delivered lead; duplicates of the same delivery are ignored."""

    job_type = IngestionJobType.SUBMISSIONS

    def process(self, row: CSVRow) -> RowOutcome:
        mapped = self.map(row)
        contact = self._target(mapped)
        submitted_at = parse_submitted_at(mapped.get(CanonicalField.SUBMITTED_AT), self.context.now_fn())
        now = utcnow()
        values = {
            "contact_id": contact.id,
            "account_id": contact.account_id,
            "dataset_id": self.context.dataset_id,
            "submitted_at": submitted_at,
            "created_at": now,
            "updated_at": now,
        }

        stmt = _insert_ignore_stmt(self.session)
        if stmt is not None:
            result = self.session.execute(
                stmt.values(**values).on_conflict_do_nothing(
                    index_elements=["contact_id", "dataset_id", "submitted_at"]
                )
            )
            inserted = bool(result.rowcount)
        else:
            exists = (
                self.session.query(LeadSubmission.id)
                .filter_by(contact_id=contact.id, dataset_id=self.context.dataset_id, submitted_at=submitted_at)
                .first()
            )
            inserted = exists is None
            if inserted:
                self.session.add(LeadSubmission(**values))
                self.session.flush()
        return RowOutcome("created" if inserted else "unchanged", contact.id)

    def _target(self, mapped: MappedRow) -> Contact:
        raw_id = mapped.get(CanonicalField.CONTACT_ID)
        if raw_id:
            try:
                contact_id = int(raw_id)
            except ValueError as exc:
                raise RowValidationError(f"Invalid contact_id '{raw_id}'") from exc
            contact = (
                self.session.query(Contact)
                .filter(
                    Contact.id == contact_id,
                    Contact.dataset_id == self.context.dataset_id,
                    Contact.deleted_at.is_(None),
                )
                .one_or_none()
            )
            if contact is None:
                raise RowValidationError(f"Contact {contact_id} not found in dataset")
            return contact

        email = normalize_email(mapped.get(CanonicalField.EMAIL))
        if not email:
            raise RowValidationError("Missing contact_id or email")
        matches = find_contacts_by_email(self.session, email, dataset_id=self.context.dataset_id)
        if not matches:
            raise RowValidationError(f"No contact found for email {email}")
        if len(matches) > 1:
            raise RowValidationError(f"Ambiguous email match: {len(matches)} contacts share {email}")
        return matches[0]


PROCESSORS: Mapping[IngestionJobType, type[RowProcessor]] = {
    IngestionJobType.CONTACTS: ContactRowProcessor,
    IngestionJobType.VALIDATION_RESULTS: ValidationResultRowProcessor,
    IngestionJobType.SUBMISSIONS: SubmissionRowProcessor,
}


def build_processor(job_type: IngestionJobType | str, context: ProcessingContext) -> RowProcessor:
    try:
        processor_cls = PROCESSORS[IngestionJobType(job_type)]
    except (KeyError, ValueError) as exc:
        raise ValueError(f"Unsupported ingestion job type '{job_type}'.") from exc
    return processor_cls(context)


__all__ = [
    "ContactRowProcessor",
    "HQ_INHERITED_FIELDS",
    "PROCESSORS",
    "ProcessingContext",
    "RowOutcome",
    "RowProcessor",
    "SubmissionRowProcessor",
    "ValidationResultRowProcessor",
    "build_processor",
    "parse_submitted_at",
]
