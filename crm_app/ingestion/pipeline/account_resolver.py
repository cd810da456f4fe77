"""
Resolve the owning account of an incoming row.

Resolution order is: the per-job cache, an exact normalized-domain match, a
bounded fuzzy candidate search scored with rapidfuzz, and finally creation of
a new account. Resolution never fails; a row that matches nothing gets a new
account.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Literal, Mapping, Optional

from flask import current_app, has_app_context
from rapidfuzz.distance import Levenshtein
from sqlalchemy import or_
from sqlalchemy.orm import Session

from crm_app.models import Account

from ..metrics import record_account_resolution
from .normalize import company_name_from_domain, normalize_company_key, normalize_domain
from .upsert import Provenance, create_account

DEFAULT_ACCEPT_THRESHOLD = 0.75
FUZZY_SIMILARITY_FLOOR = 0.85
MAX_DOMAIN_EDIT_DISTANCE = 3
DEFAULT_CANDIDATE_LIMIT = 300
DEFAULT_SCAN_LIMIT = 2000

MatchType = Literal["exact", "fuzzy", "none", "created"]


@dataclass(frozen=True)
class AccountQuery:
    """Account signals carried by one incoming row."""

    domain: str | None = None
    company_name: str | None = None
    hq_city: str | None = None
    hq_state: str | None = None
    hq_country: str | None = None
    hq_fields: Mapping[str, Any] = field(default_factory=dict)

    @property
    def root_domain(self) -> str | None:
        return normalize_domain(self.domain)

    @property
    def company_key(self) -> str | None:
        return normalize_company_key(self.company_name)

    @property
    def cache_key(self) -> str | None:
        if self.root_domain:
            return f"domain:{self.root_domain}"
        if self.company_key:
            return f"company:{self.company_key}"
        return None


@dataclass(frozen=True)
class MatchScore:
    match_type: Literal["exact", "fuzzy", "none"]
    confidence: float


@dataclass(frozen=True)
class AccountResolution:
    account_id: int | None
    match_type: MatchType
    confidence: float
    created: bool = False
    account: Optional[Account] = None


class AccountResolutionCache:
    """
    Account resolutions memoised for a single job execution.

    Two rows of the same job that share a root domain (or company key when
    there is no domain) always resolve to the same account id.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, AccountResolution] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: str | None) -> AccountResolution | None:
        if key is None:
            return None
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
        else:
            self.hits += 1
        return entry

    def put(self, key: str | None, resolution: AccountResolution) -> None:
        if key is None or resolution.account_id is None:
            return
        self._entries[key] = resolution

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries


def score_account_match(domain: str | None, company_name: str | None, candidate: Account) -> MatchScore:
    """
    Score how well ``candidate`` matches the incoming domain and company name.

    Equal domains or equal company keys are exact. Otherwise the best
    normalized Levenshtein similarity over domain/domain, domain label vs
    candidate name and company name vs candidate name decides; it must reach
    0.85 and, when both sides have domains, the domains must be within three
    edits of each other.
    """
    incoming_domain = normalize_domain(domain)
    candidate_domain = candidate.domain_normalized or normalize_domain(candidate.domain)
    if incoming_domain and candidate_domain and incoming_domain == candidate_domain:
        return MatchScore("exact", 1.0)

    company_key = normalize_company_key(company_name)
    candidate_key = candidate.name_normalized or normalize_company_key(candidate.name)
    if company_key and candidate_key and company_key == candidate_key:
        return MatchScore("exact", 1.0)

    similarities = []
    if incoming_domain and candidate_domain:
        similarities.append(Levenshtein.normalized_similarity(incoming_domain, candidate_domain))
    if incoming_domain and candidate_key:
        label = (company_name_from_domain(incoming_domain) or "").lower()
        if label:
            similarities.append(Levenshtein.normalized_similarity(label, candidate_key))
    if company_key and candidate_key:
        similarities.append(Levenshtein.normalized_similarity(company_key, candidate_key))

    best = max(similarities, default=0.0)
    domains_close = not (incoming_domain and candidate_domain) or (
        Levenshtein.distance(incoming_domain, candidate_domain) <= MAX_DOMAIN_EDIT_DISTANCE
    )
    if best >= FUZZY_SIMILARITY_FLOOR and domains_close:
        return MatchScore("fuzzy", round(best, 2))
    return MatchScore("none", 0.0)


class AccountResolver:
    """Resolve :class:`AccountQuery` objects to account ids inside one session."""

    def __init__(
        self,
        session: Session,
        cache: AccountResolutionCache | None = None,
        *,
        accept_threshold: float = DEFAULT_ACCEPT_THRESHOLD,
        candidate_limit: int = DEFAULT_CANDIDATE_LIMIT,
        scan_limit: int = DEFAULT_SCAN_LIMIT,
        provenance: Provenance | None = None,
    ) -> None:
        self.session = session
        self.cache = cache if cache is not None else AccountResolutionCache()
        self.accept_threshold = accept_threshold
        self.candidate_limit = candidate_limit
        self.scan_limit = scan_limit
        self.provenance = provenance or Provenance()

    def resolve(self, query: AccountQuery) -> AccountResolution:
        key = query.cache_key
        if key is None:
            return AccountResolution(account_id=None, match_type="none", confidence=0.0)

        cached = self.cache.get(key)
        if cached is not None:
            return replace(cached, created=False)

        resolution = self._match_existing(query)
        if resolution is None:
            account = create_account(self.session, self._seed_fields(query), self.provenance)
            resolution = AccountResolution(
                account_id=account.id,
                match_type="created",
                confidence=1.0,
                created=True,
                account=account,
            )
        self.cache.put(key, resolution)
        record_account_resolution(resolution.match_type)
        if has_app_context():
            current_app.logger.debug(
                "Resolved account %s via %s (confidence=%s)",
                resolution.account_id,
                resolution.match_type,
                resolution.confidence,
                extra={
                    "ingestion_account_id": resolution.account_id,
                    "ingestion_match_type": resolution.match_type,
                    "ingestion_match_confidence": resolution.confidence,
                },
            )
        return resolution

    def _match_existing(self, query: AccountQuery) -> AccountResolution | None:
        base = self.session.query(Account).filter(Account.deleted_at.is_(None))
        root_domain = query.root_domain
        if root_domain:
            exact = base.filter(Account.domain_normalized == root_domain).order_by(Account.id).first()
            if exact is not None:
                return AccountResolution(exact.id, "exact", 1.0, account=exact)

        best: tuple[float, int, Account, MatchScore] | None = None
        for candidate in self._candidates(query):
            score = score_account_match(root_domain, query.company_name, candidate)
            if score.match_type == "none" or score.confidence < self.accept_threshold:
                continue
            # Highest confidence wins; lower id breaks ties.
            ranking = (score.confidence, -candidate.id)
            if best is None or ranking > (best[0], best[1]):
                best = (score.confidence, -candidate.id, candidate, score)
        if best is None:
            return None
        _, _, account, score = best
        return AccountResolution(account.id, score.match_type, score.confidence, account=account)

    def _candidates(self, query: AccountQuery) -> list[Account]:
        base = self.session.query(Account).filter(Account.deleted_at.is_(None))
        conditions = []
        company_key = query.company_key
        if company_key:
            first_word = company_key.split(" ", 1)[0]
            conditions.append(Account.name_normalized.like(f"{first_word}%"))
        root_domain = query.root_domain
        if root_domain:
            stem = root_domain.split(".", 1)[0]
            conditions.append(Account.domain_normalized.like(f"%{stem}%"))
            label = (company_name_from_domain(root_domain) or "").lower()
            if label:
                conditions.append(Account.name_normalized.like(f"{label}%"))

        candidates: list[Account] = []
        if conditions:
            candidates = base.filter(or_(*conditions)).order_by(Account.id).limit(self.candidate_limit).all()
        if not candidates:
            candidates = base.order_by(Account.id).limit(self.scan_limit).all()
        return candidates

    @staticmethod
    def _seed_fields(query: AccountQuery) -> dict[str, Any]:
        fields: dict[str, Any] = dict(query.hq_fields)
        fields["name"] = query.company_name or company_name_from_domain(query.root_domain) or query.root_domain
        fields["domain"] = query.root_domain
        for key, value in (("hq_city", query.hq_city), ("hq_state", query.hq_state), ("hq_country", query.hq_country)):
            if value and not fields.get(key):
                fields[key] = value
        return fields


__all__ = [
    "AccountQuery",
    "AccountResolution",
    "AccountResolutionCache",
    "AccountResolver",
    "MatchScore",
    "score_account_match",
]
