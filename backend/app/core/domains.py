"""
Helpers for custom tenant domains.

Every domain value goes through normalize_domain() before it is stored or
compared, otherwise lookups by Host silently miss.
"""
import re
from typing import List


_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://")
_DOMAIN_RE = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)(\.(?!-)[a-z0-9-]{1,63}(?<!-))*\.[a-z]{2,}$")

COMMON_SUBDOMAINS = ["api", "app", "admin", "dashboard", "portal", "www", "staging", "dev", "test"]


def normalize_domain(domain: str) -> str:
    """Lower-case, no scheme, no trailing slash, no surrounding whitespace."""
    value = domain.strip().lower()
    while True:
        stripped = _SCHEME_RE.sub("", value).rstrip("/").strip()
        if stripped == value:
            return value
        value = stripped


def is_valid_domain(domain: str) -> bool:
    return bool(_DOMAIN_RE.match(normalize_domain(domain)))


def extract_domain_from_host(host: str) -> str:
    """Bare domain from a Host header value (scheme, path and port removed)."""
    value = normalize_domain(host)
    value = value.split("/", 1)[0]
    if value.startswith("["):
        # IPv6 literal, e.g. [::1]:8000
        return value.split("]", 1)[0] + "]"
    return value.split(":", 1)[0]


def is_subdomain(domain: str) -> bool:
    return len(normalize_domain(domain).split(".")) > 2


def get_root_domain(domain: str) -> str:
    normalized = normalize_domain(domain)
    parts = normalized.split(".")
    if len(parts) <= 2:
        return normalized
    return ".".join(parts[-2:])


def get_subdomain_suggestions(root_domain: str) -> List[str]:
    root = normalize_domain(root_domain)
    return [f"{sub}.{root}" for sub in COMMON_SUBDOMAINS]
