"""Name and domain canonicalisation.

Every function here is pure and idempotent: feeding an already-normalised
value back in returns it unchanged.
"""

from __future__ import annotations

import re
from urllib.parse import urlsplit

from unidecode import unidecode

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_COMPANY_SUFFIX_PATTERN = re.compile(
    r"\b("
    r"inc|incorporated|corp|corporation|llc|llp|ltd|limited|co|company|"
    r"group|holdings?|partners?|lp|gp"
    r")\b\.?",
    re.IGNORECASE,
)

_PERSON_SUFFIX_PATTERN = re.compile(
    r"\b(jr|sr|ii|iii|iv|phd|md|esq)\b\.?",
    re.IGNORECASE,
)

_LEADING_THE = re.compile(r"^the\s+", re.IGNORECASE)
_COMPANY_PUNCTUATION = re.compile(r"[.,&\-']")
_PERSON_PUNCTUATION = re.compile(r"[.,\-']")
_WHITESPACE = re.compile(r"\s+")

# label(.label)+ with an alphabetic TLD of at least two characters
_EMAIL_DOMAIN = re.compile(r"@([a-zA-Z0-9.-]+\.[a-zA-Z]{2,})$")
_SCHEME = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")
_HOSTNAME = re.compile(r"^[a-z0-9_]([a-z0-9_-]*[a-z0-9])?(\.[a-z0-9_]([a-z0-9_-]*[a-z0-9])?)*$")


def _collapse(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


# ---------------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------------

def normalize_company_name(name: str) -> str:
    """Normalise a company name for matching.

    Steps:
      1. Transliterate Unicode to ASCII and lowercase.
      2. Strip legal suffixes (Inc, Corp, LLC, Ltd, Co, Group, ...) as whole words.
      3. Strip a leading "the ".
      4. Remove ``. , & - '`` punctuation.
      5. Collapse whitespace.

    Suffix stripping and punctuation removal are repeated until the value
    stops changing, which is what makes the function idempotent for inputs
    like ``"Acme Co. Inc."``.
    """
    text = _collapse(unidecode(name).lower())
    previous = None
    while text != previous:
        previous = text
        text = _COMPANY_SUFFIX_PATTERN.sub(" ", text)
        text = _collapse(text)
        text = _LEADING_THE.sub("", text)
        text = _COMPANY_PUNCTUATION.sub("", text)
        text = _collapse(text)
    return text


def normalize_person_name(first_name: str, last_name: str) -> str:
    """Normalise a person's full name ("first last") for matching."""
    text = _collapse(unidecode(f"{first_name} {last_name}").lower())
    previous = None
    while text != previous:
        previous = text
        text = _PERSON_SUFFIX_PATTERN.sub(" ", text)
        text = _PERSON_PUNCTUATION.sub("", text)
        text = _collapse(text)
    return text


# ---------------------------------------------------------------------------
# Domains
# ---------------------------------------------------------------------------

def extract_domain_from_email(email: str) -> str | None:
    """Return the lowercased domain of *email*, or ``None`` if it has none."""
    match = _EMAIL_DOMAIN.search(email.strip())
    if match is None:
        return None
    return match.group(1).lower()


def extract_domain_from_url(url: str) -> str | None:
    """Return the host of *url* without a leading ``www.``.

    A missing scheme is treated as ``https://``.  Non-ASCII hosts come back
    in their IDNA (punycode) form.  Returns ``None`` when the string does not
    parse to a URL with a host.
    """
    candidate = url.strip()
    if not candidate:
        return None
    if not _SCHEME.match(candidate):
        candidate = f"https://{candidate}"
    try:
        host = urlsplit(candidate).hostname
    except ValueError:
        return None
    if not host:
        return None
    host = host.lower().rstrip(".")
    if not host.isascii():
        try:
            host = host.encode("idna").decode("ascii")
        except UnicodeError:
            return None
    if not _HOSTNAME.match(host):
        return None
    if host.startswith("www."):
        host = host[4:]
    return host or None
