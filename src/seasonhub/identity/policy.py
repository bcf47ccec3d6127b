"""Tier-floor policies injected into the identity resolver.

A policy maps ``(email, chosen_name)`` to a minimum subscription tier.
A positive floor also counts as proof of prior ownership of a display
name when reclaiming it.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

from seasonhub.config import Settings

TierPolicy = Callable[[str | None, str | None], int]


def no_tier_policy(_email: str | None, _chosen_name: str | None) -> int:
    return 0


def allowlist_policy(emails: Iterable[str], names: Iterable[str], floor: int) -> TierPolicy:
    """Grant ``floor`` to any identity whose email or chosen name is listed."""
    email_set = frozenset(e.strip().lower() for e in emails if e.strip())
    name_set = frozenset(n.strip().lower() for n in names if n.strip())

    def policy(email: str | None, chosen_name: str | None) -> int:
        if email and email.strip().lower() in email_set:
            return floor
        if chosen_name and chosen_name.strip().lower() in name_set:
            return floor
        return 0

    return policy


def policy_from_settings(settings: Settings) -> TierPolicy:
    if not settings.og_allowlist_emails and not settings.og_allowlist_names:
        return no_tier_policy
    return allowlist_policy(settings.og_allowlist_emails, settings.og_allowlist_names, settings.og_tier_floor)
