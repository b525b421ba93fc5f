"""CSV export of a finished run's surviving contacts.

Files are written as ``contacts_<tenant-key>_<run>_<timestamp>.csv`` under the
configured export directory and served back through the exports route.

The tenant key is the sanitized tenant id plus a digest of the raw id. Two
tenants whose ids sanitize alike still get different keys, and no key is a
prefix of another.
"""

from __future__ import annotations

import csv
import hashlib
import re
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path

import structlog

from src.dedupe.duplicates.schemas import Contact

logger = structlog.get_logger(__name__)

EXPORT_HEADER = [
    "ID",
    "HubSpot ID",
    "Email",
    "First Name",
    "Last Name",
    "Phone",
    "Company",
    "Create Date",
    "Last Modified Date",
]

EXPORT_URL_PREFIX = "/api/v1/exports"

_UNSAFE = re.compile(r"[^A-Za-z0-9-]+")


def _safe(value: str) -> str:
    return _UNSAFE.sub("-", value).strip("-") or "tenant"


def export_prefix(tenant_id: str) -> str:
    """Filename prefix every export of ``tenant_id`` starts with."""
    digest = hashlib.sha256(tenant_id.encode("utf-8")).hexdigest()[:16]
    return f"contacts_{_safe(tenant_id)}-{digest}_"


def _iso(value: datetime | None) -> str:
    return value.isoformat() if value else ""


class ContactExporter:
    """Writes contact snapshots to CSV files.

    Args:
        export_dir: Directory the files are written to (created on demand).
    """

    def __init__(self, export_dir: str | Path) -> None:
        self._export_dir = Path(export_dir)

    @property
    def export_dir(self) -> Path:
        return self._export_dir

    def write(self, tenant_id: str, run_id: str, contacts: Sequence[Contact]) -> str:
        """Write ``contacts`` and return the download link. Blocking; run in a thread."""
        self._export_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        filename = f"{export_prefix(tenant_id)}{_safe(run_id)}_{timestamp}.csv"
        path = self._export_dir / filename

        with path.open("w", newline="", encoding="utf-8") as fh:
            writer = csv.writer(fh)
            writer.writerow(EXPORT_HEADER)
            for contact in contacts:
                writer.writerow(
                    [
                        contact.id,
                        contact.hubspot_id,
                        contact.email or "",
                        contact.first_name or "",
                        contact.last_name or "",
                        contact.phone or "",
                        contact.company or "",
                        _iso(contact.create_date),
                        _iso(contact.last_modified_date),
                    ]
                )

        logger.info(
            "exports.written",
            tenant_id=tenant_id,
            run_id=run_id,
            rows=len(contacts),
            file=filename,
        )
        return f"{EXPORT_URL_PREFIX}/{filename}"

    def resolve(self, tenant_id: str, filename: str) -> Path | None:
        """Path of a tenant's export, or None if it isn't theirs or doesn't exist."""
        if "/" in filename or "\\" in filename or not filename.startswith(export_prefix(tenant_id)):
            return None
        path = self._export_dir / filename
        return path if path.is_file() else None
