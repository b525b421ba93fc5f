"""CRM adapter abstract base class -- the contact operations the dedupe workflow consumes.

Every CRM backend implements this ABC. The job runner only fetches; the
merge resolver only updates and detaches. Implementations raise
UpstreamUnavailable for transport failures and UpstreamRejected when the CRM
refuses a call.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence

from src.dedupe.duplicates.schemas import ContactPage


class CRMAdapter(ABC):
    """Abstract interface for CRM contact operations.

    Methods:
        fetch_contacts: Fetch one cursor-paginated page of contacts.
        update_contact: Patch properties of one contact, return its new id if re-keyed.
        delete_or_merge_contact: Retire a secondary contact, return the surviving id if reported.
    """

    @abstractmethod
    async def fetch_contacts(
        self, cursor: str | None, properties: Sequence[str] = ()
    ) -> ContactPage:
        """Fetch the page after ``cursor`` (None for the first page).

        ``properties`` names extra CRM properties to request on top of the
        standard contact fields.
        """
        ...

    @abstractmethod
    async def update_contact(self, external_id: str, properties: dict[str, str]) -> str | None:
        """Update contact properties by external ID.

        Returns the contact's new external id if the CRM re-keyed it, else None.
        """
        ...

    @abstractmethod
    async def delete_or_merge_contact(
        self, external_id: str, into_external_id: str | None = None
    ) -> str | None:
        """Retire ``external_id``, merging it into ``into_external_id`` when given.

        A contact that no longer exists counts as success. Returns the
        surviving contact's external id if the CRM reported one.
        """
        ...
