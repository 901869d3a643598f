"""Identity Normalizer: guest sign-in names back to directory-searchable logins.

A guest invited into a directory gets a synthesized sign-in name:

    jdoe_contoso.com#EXT#@tenant.onmicrosoft.com
    └─local─┘└domain─┘      └── inviting tenant ──┘

Replaying an assignment in another directory means undoing that encoding
(``jdoe@contoso.com``), then re-applying it against the *target* directory's
initial domain if the home domain is not one the target has verified.

Every function here is pure and total: malformed input is returned
best-effort, never raised on.
"""
from __future__ import annotations

from typing import Iterable

from schemas.rbac import NormalizedIdentity

EXTERNAL_MARKER = "#EXT#"


def strip_external_marker(sign_in_name: str) -> tuple[str, bool]:
    """Truncate at the ``#EXT#`` marker.

    Returns ``(truncated, found)``; input without a marker comes back
    unchanged with ``found=False``.
    """
    idx = sign_in_name.find(EXTERNAL_MARKER)
    if idx < 0:
        return sign_in_name, False
    return sign_in_name[:idx], True


def reconstruct_guest_address(local_and_domain: str) -> str:
    """``local_domain`` → ``local@domain``, splitting on the last underscore.

    Without an underscore the value is returned unchanged.
    """
    local, sep, domain = local_and_domain.rpartition("_")
    if not sep:
        return local_and_domain
    return f"{local}@{domain}"


def domain_suffix(login_name: str) -> str | None:
    """Substring after the last ``@``, or None when there is no ``@``."""
    _, sep, suffix = login_name.rpartition("@")
    return suffix if sep else None


def is_verified_domain(suffix: str, verified_domains: Iterable[str]) -> bool:
    """True if any verified domain contains *suffix* (case-insensitive)."""
    needle = suffix.lower()
    if not needle:
        return False
    return any(needle in d.lower() for d in verified_domains)


def externalize(login_name: str, initial_domain: str) -> str:
    """``local@domain`` → ``local_domain#EXT#@<initial_domain>``."""
    return f"{login_name.replace('@', '_')}{EXTERNAL_MARKER}@{initial_domain}"


def normalize(
    sign_in_name: str | None,
    verified_domains: Iterable[str],
    initial_domain: str = "",
) -> NormalizedIdentity:
    """Canonicalize a recorded sign-in name for lookup in the target directory.

    Identifiers without the external marker are returned as-is.  Guest
    identifiers are unwrapped to their home address; that address is used
    directly when its domain is verified in the target, otherwise it is
    re-wrapped with the target's *initial_domain*.
    """
    if not sign_in_name:
        return NormalizedIdentity(login_name="", is_external_hint=False)

    truncated, is_external = strip_external_marker(sign_in_name)
    if not is_external:
        return NormalizedIdentity(login_name=sign_in_name, is_external_hint=False)

    login = reconstruct_guest_address(truncated)
    suffix = domain_suffix(login)
    if suffix is None:
        # no home domain to classify
        return NormalizedIdentity(login_name=login, is_external_hint=True)

    if not is_verified_domain(suffix, verified_domains):
        login = externalize(login, initial_domain)
    return NormalizedIdentity(login_name=login, is_external_hint=True)


def initial_domain_of(domains) -> str:
    """Pick the tenant's initial domain from ``VerifiedDomain`` values.

    Falls back to the first ``*.onmicrosoft.com`` domain, then to the first
    domain, then to an empty string.
    """
    domains = list(domains)
    for d in domains:
        if d.is_initial:
            return d.name
    for d in domains:
        if d.name.lower().endswith(".onmicrosoft.com"):
            return d.name
    return domains[0].name if domains else ""
