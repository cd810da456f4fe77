"""
Pure normalization helpers shared by every ingestion stage.

Every function here is total: malformed input yields ``None`` (or the closest
safe value) instead of raising, and applying a normalizer to its own output
returns the same value.
"""

from __future__ import annotations

import hashlib
import re
from typing import Iterable

from crm_app.models.enums import EmailStatus

_WHITESPACE_RE = re.compile(r"\s+")
_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://")
_DOMAIN_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)*\.[a-z]{2,}$")
_E164_RE = re.compile(r"^\+[1-9]\d{7,14}$")
_PHONE_EXTENSION_RE = re.compile(r"\s*(?:x|ext\.?|extension|#)\s*\d+.*$", re.IGNORECASE)
_PUNCTUATION_RE = re.compile(r"[^\w\s]|_")
_LIST_SPLIT_RE = re.compile(r"[;,|]")

SUBDOMAIN_PREFIXES: tuple[str, ...] = ("www.", "mail.", "m.", "ftp.", "web.", "smtp.", "webmail.")

# Public suffixes with two labels; the registrable domain keeps three labels.
TWO_LEVEL_SUFFIXES: frozenset[str] = frozenset(
    {
        "co.uk",
        "org.uk",
        "ac.uk",
        "gov.uk",
        "ltd.uk",
        "plc.uk",
        "me.uk",
        "com.au",
        "net.au",
        "org.au",
        "edu.au",
        "co.nz",
        "org.nz",
        "co.za",
        "co.in",
        "net.in",
        "org.in",
        "co.jp",
        "ne.jp",
        "or.jp",
        "com.br",
        "com.mx",
        "com.ar",
        "com.cn",
        "com.hk",
        "com.sg",
        "com.tr",
        "co.kr",
        "co.il",
        "com.my",
        "com.ph",
    }
)

PERSONAL_EMAIL_DOMAINS: frozenset[str] = frozenset(
    {
        "gmail.com",
        "googlemail.com",
        "yahoo.com",
        "yahoo.co.uk",
        "yahoo.ca",
        "hotmail.com",
        "outlook.com",
        "live.com",
        "msn.com",
        "aol.com",
        "icloud.com",
        "me.com",
        "mac.com",
        "protonmail.com",
        "proton.me",
        "mail.com",
        "zoho.com",
        "yandex.com",
        "gmx.com",
        "gmx.net",
        "naver.com",
        "qq.com",
        "163.com",
    }
)

PLACEHOLDER_DOMAINS: frozenset[str] = frozenset({"example.com", "example.org", "example.net", "localhost"})

LEGAL_SUFFIXES: frozenset[str] = frozenset(
    {
        "limited",
        "ltd",
        "llc",
        "llp",
        "lp",
        "inc",
        "incorporated",
        "corp",
        "corporation",
        "plc",
        "gmbh",
        "ag",
        "sa",
        "sas",
        "srl",
        "spa",
        "nv",
        "bv",
        "oy",
        "ab",
        "as",
        "co",
        "company",
        "pty",
        "pvt",
        "pte",
        "private",
        "holdings",
        "group",
    }
)

_EMAIL_STATUS_ALIASES: dict[str, EmailStatus] = {
    "ok": EmailStatus.OK,
    "valid": EmailStatus.OK,
    "deliverable": EmailStatus.OK,
    "invalid": EmailStatus.INVALID,
    "undeliverable": EmailStatus.INVALID,
    "risky": EmailStatus.RISKY,
    "accept_all": EmailStatus.ACCEPT_ALL,
    "acceptall": EmailStatus.ACCEPT_ALL,
    "catch_all": EmailStatus.ACCEPT_ALL,
    "disposable": EmailStatus.DISPOSABLE,
}


def clean_text(value: object | None) -> str | None:
    """Strip a raw cell value; blank becomes ``None``."""
    if value is None:
        return None
    token = value.strip() if isinstance(value, str) else str(value).strip()
    return token or None


def normalize_email(value: object | None) -> str | None:
    token = clean_text(value)
    if token is None:
        return None
    return token.lower()


def email_domain(email: object | None) -> str | None:
    """Return the part after ``@`` of a normalized email."""
    normalized = normalize_email(email)
    if not normalized or "@" not in normalized:
        return None
    domain = normalized.rsplit("@", 1)[1]
    return domain or None


def is_personal_domain(domain: object | None) -> bool:
    token = clean_text(domain)
    if token is None:
        return False
    return token.lower() in PERSONAL_EMAIL_DOMAINS


def _root_domain(host: str) -> str:
    labels = host.split(".")
    if len(labels) >= 3 and ".".join(labels[-2:]) in TWO_LEVEL_SUFFIXES:
        return ".".join(labels[-3:])
    return ".".join(labels[-2:])


def normalize_domain(value: object | None) -> str | None:
    """
    Reduce a URL, hostname or email to its registrable root domain.

    Returns ``None`` for anything that is not a usable company domain,
    including personal mailbox providers and placeholder domains.
    """
    token = clean_text(value)
    if token is None:
        return None
    host = token.lower()
    if _WHITESPACE_RE.search(host):
        return None

    host = _SCHEME_RE.sub("", host)
    for separator in ("/", "?", "#"):
        host = host.split(separator, 1)[0]
    if "@" in host:
        host = host.rsplit("@", 1)[1]
    host = host.split(":", 1)[0].strip(".")

    for prefix in SUBDOMAIN_PREFIXES:
        if host.startswith(prefix) and "." in host[len(prefix) :]:
            host = host[len(prefix) :]
            break

    if not host or ".." in host:
        return None
    if host in PLACEHOLDER_DOMAINS:
        return None
    if not _DOMAIN_RE.match(host):
        return None

    root = _root_domain(host)
    if root in PERSONAL_EMAIL_DOMAINS or root in PLACEHOLDER_DOMAINS:
        return None
    return root


def normalize_name(value: object | None) -> str | None:
    token = clean_text(value)
    if token is None:
        return None
    return _WHITESPACE_RE.sub(" ", token.lower())


def normalize_company_key(value: object | None) -> str | None:
    """
    Comparison key for company names.

    ``"The Acme Corp., Inc."`` and ``"acme"`` share the key ``"acme"``. The key
    is only used for matching; the display name is stored as given.
    """
    name = normalize_name(value)
    if name is None:
        return None
    tokens = _PUNCTUATION_RE.sub("", name).split()
    while len(tokens) > 1 and tokens[-1] in LEGAL_SUFFIXES:
        tokens.pop()
    while len(tokens) > 1 and tokens[0] == "the":
        tokens.pop(0)
    key = " ".join(tokens)
    return key or None


def normalize_country_key(value: object | None) -> str | None:
    token = clean_text(value)
    if token is None:
        return None
    key = _WHITESPACE_RE.sub(" ", token.lower().replace(".", "")).strip()
    return key or None


def normalize_phone_e164(value: object | None, default_country_code: str = "1") -> str | None:
    """
    Normalize a phone number to strict E.164.

    Extensions and formatting are dropped, a ``00`` prefix becomes ``+``, ten
    bare digits get ``default_country_code`` and eleven digits starting with
    ``1`` get a ``+``. Anything else without a leading ``+`` is rejected.
    """
    token = clean_text(value)
    if token is None:
        return None
    token = _PHONE_EXTENSION_RE.sub("", token).strip()
    if not token:
        return None

    international = token.startswith("+")
    digits = "".join(char for char in token if char.isdigit())
    if not international and digits.startswith("00"):
        international = True
        digits = digits[2:]

    if international:
        candidate = f"+{digits}"
    elif len(digits) == 10:
        candidate = f"+{default_country_code}{digits}"
    elif len(digits) == 11 and digits.startswith("1"):
        candidate = f"+{digits}"
    else:
        return None

    if _E164_RE.match(candidate):
        return candidate
    return None


def compute_name_company_hash(name: object | None, company: object | None) -> str | None:
    """SHA-256 of ``name|company_key``; ``None`` unless both parts are present."""
    name_key = normalize_name(name)
    company_key = normalize_company_key(company)
    if not name_key or not company_key:
        return None
    return hashlib.sha256(f"{name_key}|{company_key}".encode("utf-8")).hexdigest()


def company_name_from_domain(domain: object | None) -> str | None:
    """``"acme.co.uk"`` becomes ``"Acme"``."""
    root = normalize_domain(domain)
    if root is None:
        return None
    label = root.split(".", 1)[0]
    return label[:1].upper() + label[1:]


def normalize_email_status(value: object | None) -> EmailStatus:
    """Map a verifier's status vocabulary onto :class:`EmailStatus`."""
    token = clean_text(value)
    if token is None:
        return EmailStatus.UNKNOWN
    key = _WHITESPACE_RE.sub("_", token.lower()).replace("-", "_")
    return _EMAIL_STATUS_ALIASES.get(key, EmailStatus.UNKNOWN)


def split_list(value: object | None) -> list[str]:
    """Split a multi-valued cell (``a; b | c``) into trimmed, de-duplicated items."""
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        raw_items: Iterable[object] = value
    else:
        raw_items = _LIST_SPLIT_RE.split(str(value))
    items: list[str] = []
    for raw in raw_items:
        item = clean_text(raw)
        if item and item not in items:
            items.append(item)
    return items


__all__ = [
    "LEGAL_SUFFIXES",
    "PERSONAL_EMAIL_DOMAINS",
    "PLACEHOLDER_DOMAINS",
    "clean_text",
    "company_name_from_domain",
    "compute_name_company_hash",
    "email_domain",
    "is_personal_domain",
    "normalize_company_key",
    "normalize_country_key",
    "normalize_domain",
    "normalize_email",
    "normalize_email_status",
    "normalize_name",
    "normalize_phone_e164",
    "split_list",
]
