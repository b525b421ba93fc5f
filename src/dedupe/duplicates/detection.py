"""Duplicate detection -- pluggable matching rules that turn a run's contacts into groups.

Run filters use a small string grammar:
- ``"same_email"``: contacts sharing a normalized address (primary or
  additional emails) match.
- ``"condition_<n>:<prop>[,<prop>...]"``: contacts with identical non-empty
  values for every listed HubSpot property match. Properties may be standard
  fields (firstname, lastname, email, phone, company) or any custom property.

Rules are applied in order, email first. A contact belongs to at most one
group: within a rule's cluster, two or more ungrouped contacts open a new
group, and a single ungrouped contact joins the existing group that shares a
member with its cluster. Groups with fewer than two members are dropped.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence

import structlog

from src.dedupe.duplicates.crm.field_mapping import STANDARD_PROPERTIES, contact_property
from src.dedupe.duplicates.errors import InvalidFilter
from src.dedupe.duplicates.schemas import Contact

logger = structlog.get_logger(__name__)

SAME_EMAIL = "same_email"
CONDITION_PREFIX = "condition_"


# ── Rules ───────────────────────────────────────────────────────────────────


class MatchRule(ABC):
    """A similarity predicate expressed as match keys.

    Two contacts match under a rule when they share at least one key.
    """

    name: str

    @abstractmethod
    def keys(self, contact: Contact) -> list[tuple[str, ...]]:
        """Match keys for a contact; empty when the contact can't match."""
        ...

    @property
    def properties(self) -> tuple[str, ...]:
        """CRM properties the rule reads."""
        return ()


class EmailRule(MatchRule):
    """Match on case-insensitive email, including additional addresses."""

    name = SAME_EMAIL

    def keys(self, contact: Contact) -> list[tuple[str, ...]]:
        addresses = [contact.email or "", *contact.additional_emails]
        normalized = {a.strip().lower() for a in addresses if a and a.strip()}
        return [(address,) for address in sorted(normalized)]


class PropertyRule(MatchRule):
    """Match on identical, non-empty values of every listed property."""

    def __init__(self, name: str, properties: Sequence[str]) -> None:
        if not properties:
            raise InvalidFilter(f"Filter {name} names no properties")
        self.name = name
        self._properties = tuple(properties)

    @property
    def properties(self) -> tuple[str, ...]:
        return self._properties

    def keys(self, contact: Contact) -> list[tuple[str, ...]]:
        values = []
        for prop in self._properties:
            value = contact_property(contact, prop)
            if value is None or not str(value).strip():
                return []
            values.append(str(value).strip())
        return [tuple(values)]


def parse_filters(filters: Iterable[str]) -> list[MatchRule]:
    """Parse run filter strings into rules, email rule first.

    Raises:
        InvalidFilter: A filter string is not part of the grammar.
    """
    email_rules: list[MatchRule] = []
    condition_rules: list[MatchRule] = []
    for raw in filters:
        token = raw.strip()
        if token == SAME_EMAIL:
            if not email_rules:
                email_rules.append(EmailRule())
        elif token.startswith(CONDITION_PREFIX) and ":" in token:
            name, _, prop_list = token.partition(":")
            props = [p.strip() for p in prop_list.split(",") if p.strip()]
            condition_rules.append(PropertyRule(name, props))
        else:
            raise InvalidFilter(f"Unknown duplicate filter: {raw!r}")
    return email_rules + condition_rules


def requested_properties(filters: Iterable[str]) -> list[str]:
    """Custom CRM properties the filters need fetched beyond the standard set."""
    extra: list[str] = []
    for rule in parse_filters(filters):
        for prop in rule.properties:
            if prop not in STANDARD_PROPERTIES and prop not in extra:
                extra.append(prop)
    return extra


# ── Detector ────────────────────────────────────────────────────────────────


def _clusters(rule: MatchRule, contacts: Sequence[Contact]) -> list[list[int]]:
    """Connected components of contacts sharing a key, in first-seen order."""
    parent: dict[int, int] = {}

    def find(x: int) -> int:
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    owner: dict[tuple[str, ...], int] = {}
    for contact in contacts:
        for key in rule.keys(contact):
            parent.setdefault(contact.id, contact.id)
            if key in owner:
                root_a, root_b = find(owner[key]), find(contact.id)
                if root_a != root_b:
                    parent[root_b] = root_a
            else:
                owner[key] = contact.id

    components: dict[int, list[int]] = {}
    for contact in contacts:
        if contact.id in parent:
            components.setdefault(find(contact.id), []).append(contact.id)
    return [members for members in components.values() if len(members) > 1]


class DuplicateDetector:
    """Groups contacts with an ordered list of match rules.

    Args:
        rules: Rules applied in order; earlier rules claim contacts first.
    """

    def __init__(self, rules: Sequence[MatchRule]) -> None:
        self._rules = list(rules)

    @classmethod
    def from_filters(cls, filters: Iterable[str]) -> DuplicateDetector:
        return cls(parse_filters(filters))

    @property
    def rules(self) -> list[MatchRule]:
        return list(self._rules)

    def find_groups(self, contacts: Sequence[Contact]) -> list[list[int]]:
        """Return member-id lists (each of length >= 2) in creation order."""
        live = [c for c in contacts if not c.removed]
        groups: list[list[int]] = []
        grouped: set[int] = set()

        for rule in self._rules:
            for cluster in _clusters(rule, live):
                ungrouped = [cid for cid in cluster if cid not in grouped]
                if len(ungrouped) > 1:
                    groups.append(ungrouped)
                    grouped.update(ungrouped)
                elif len(ungrouped) == 1:
                    for group in groups:
                        if any(cid in group for cid in cluster):
                            group.append(ungrouped[0])
                            grouped.add(ungrouped[0])
                            break

        valid = [g for g in groups if len(g) >= 2]
        logger.info(
            "detection.groups_found",
            rules=[r.name for r in self._rules],
            contacts=len(live),
            groups=len(valid),
            grouped_contacts=sum(len(g) for g in valid),
        )
        return valid
