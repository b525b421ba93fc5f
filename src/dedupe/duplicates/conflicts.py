"""Field conflict helpers -- pure functions used before and during a merge.

- field_options(): distinct candidate values per field across a group
- compute_delta(): HubSpot properties that differ between the reviewer's
  selections and the primary's current snapshot
- apply_delta(): the primary snapshot after a successful update
"""

from __future__ import annotations

from datetime import datetime, timezone

from src.dedupe.duplicates.crm.field_mapping import EDITABLE_PROPERTY_MAP
from src.dedupe.duplicates.schemas import Contact, DuplicateGroup, FieldOptions, FieldSelections


def _append_distinct(values: list[str], value: str | None) -> None:
    if value is None:
        return
    text = str(value)
    if text.strip() and text not in values:
        values.append(text)


def field_options(group: DuplicateGroup) -> FieldOptions:
    """Project a group's members into per-field choices.

    Values keep first-seen member order; empty values are skipped and no
    value is ever synthesized.
    """
    options = FieldOptions()
    for contact in group.contacts:
        _append_distinct(options.first_name, contact.first_name)
        _append_distinct(options.last_name, contact.last_name)
        _append_distinct(options.phone, contact.phone)
        _append_distinct(options.company, contact.company)
        for key, value in contact.other_properties.items():
            _append_distinct(options.other_properties.setdefault(key, []), value)
    return options


def compute_delta(primary: Contact, selections: FieldSelections) -> dict[str, str]:
    """HubSpot-named properties whose selected value differs from the primary's.

    A None selection keeps the current value. Missing current values compare
    as the empty string, so selecting "" for an empty field is not a change.
    """
    delta: dict[str, str] = {}
    for hubspot_name, field in EDITABLE_PROPERTY_MAP.items():
        selected = getattr(selections, field)
        if selected is None:
            continue
        if selected != (getattr(primary, field) or ""):
            delta[hubspot_name] = selected

    for key, selected in selections.other_properties.items():
        if key in EDITABLE_PROPERTY_MAP:
            # Standard fields are only taken from their typed slots
            continue
        if selected != primary.other_properties.get(key, ""):
            delta[key] = selected
    return delta


def apply_delta(primary: Contact, delta: dict[str, str], new_external_id: str | None) -> Contact:
    """Return the primary snapshot with ``delta`` applied and the freshest id."""
    updates: dict = {}
    other = dict(primary.other_properties)
    for key, value in delta.items():
        field = EDITABLE_PROPERTY_MAP.get(key)
        if field is not None:
            updates[field] = value or None
        elif value:
            other[key] = value
        else:
            other.pop(key, None)
    updates["other_properties"] = other
    if new_external_id:
        updates["hubspot_id"] = new_external_id
    if delta or new_external_id:
        updates["last_modified_date"] = datetime.now(timezone.utc)
    return primary.model_copy(update=updates)
