"""CRM integration layer -- pluggable contact adapters for the dedupe workflow.

Provides abstract CRMAdapter interface with the HubSpot implementation:
- HubSpotAdapter: CRM v3 contacts API over httpx with tenacity retries
- field_mapping: HubSpot property <-> Contact snapshot conversion
"""

from src.dedupe.duplicates.crm.adapter import CRMAdapter
from src.dedupe.duplicates.crm.field_mapping import (
    EDITABLE_PROPERTY_MAP,
    STANDARD_PROPERTIES,
    contact_property,
    from_hubspot_contact,
)
from src.dedupe.duplicates.crm.hubspot import HubSpotAdapter

__all__ = [
    "CRMAdapter",
    "HubSpotAdapter",
    "EDITABLE_PROPERTY_MAP",
    "STANDARD_PROPERTIES",
    "contact_property",
    "from_hubspot_contact",
]
