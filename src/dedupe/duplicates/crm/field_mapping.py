"""Field mapping between HubSpot contact properties and Contact snapshots.

HubSpot returns contacts as ``{"id": ..., "properties": {name: value}}``.
Known properties map onto Contact columns; everything else is kept verbatim
in ``other_properties``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from src.dedupe.duplicates.schemas import Contact, FetchedContact

# Properties requested on every fetch
STANDARD_PROPERTIES: tuple[str, ...] = (
    "firstname",
    "lastname",
    "email",
    "phone",
    "company",
    "hs_additional_emails",
    "createdate",
    "lastmodifieddate",
    "hs_object_id",
)

# HubSpot property -> Contact attribute, for fields a reviewer can edit
EDITABLE_PROPERTY_MAP: dict[str, str] = {
    "firstname": "first_name",
    "lastname": "last_name",
    "phone": "phone",
    "company": "company",
}

# HubSpot property -> Contact attribute, for every column-backed field
PROPERTY_TO_FIELD: dict[str, str] = {
    **EDITABLE_PROPERTY_MAP,
    "email": "email",
}

# Properties that never land in other_properties
_RESERVED = frozenset(STANDARD_PROPERTIES)


def parse_additional_emails(raw: str | None) -> list[str]:
    """Split HubSpot's ``hs_additional_emails`` (semicolon separated) into addresses."""
    if not raw:
        return []
    parts = raw.replace(",", ";").split(";")
    return [p.strip() for p in parts if p.strip()]


def parse_hubspot_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 or epoch-millisecond timestamp from HubSpot."""
    if value in (None, ""):
        return None
    text = str(value)
    if text.isdigit():
        return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def from_hubspot_contact(record: dict[str, Any]) -> FetchedContact:
    """Convert a HubSpot contact object into a FetchedContact."""
    props: dict[str, Any] = record.get("properties") or {}
    other = {
        key: str(value)
        for key, value in props.items()
        if key not in _RESERVED and value not in (None, "")
    }
    return FetchedContact(
        hubspot_id=str(record.get("id") or props.get("hs_object_id")),
        email=props.get("email") or None,
        additional_emails=parse_additional_emails(props.get("hs_additional_emails")),
        first_name=props.get("firstname") or None,
        last_name=props.get("lastname") or None,
        phone=props.get("phone") or None,
        company=props.get("company") or None,
        create_date=parse_hubspot_datetime(props.get("createdate")),
        last_modified_date=parse_hubspot_datetime(props.get("lastmodifieddate")),
        other_properties=other,
    )


def contact_property(contact: Contact | FetchedContact, name: str) -> str | None:
    """Read a HubSpot-named property off a contact snapshot."""
    field = PROPERTY_TO_FIELD.get(name)
    if field is not None:
        return getattr(contact, field)
    return contact.other_properties.get(name)
