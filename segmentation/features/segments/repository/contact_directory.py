"""
Read-only access to the contact and list membership stores.

Expected collaborator tables:

    contacts(id BIGINT PK, email TEXT, name TEXT, status TEXT,
             gdpr_consent_at TIMESTAMPTZ)
    lists(id BIGINT PK, name TEXT)
    list_memberships(contact_id BIGINT, list_id BIGINT, subscribed_at TIMESTAMPTZ)

Every method is a single statement, so each batch is a consistent read.
"""

from collections.abc import Collection, Sequence

from segmentation.db.helpers import fetch_all
from segmentation.features.segments.domain import Contact, ContactStatus
from segmentation.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

_STATUSES = {status.value: status for status in ContactStatus}


class ContactDirectoryRepository:
    """Postgres-backed contact source for the membership evaluator."""

    async def batch_ranges(self, batch_size: int) -> list[tuple[int, int]]:
        """
        Split existing contact ids into batches of batch_size rows.

        Each range runs from one batch's first id up to the next batch's
        first id, so the ranges are contiguous and gaps in the id sequence
        cost nothing. One index-only pass over contacts.id.
        """
        query = """
            WITH numbered AS (
                SELECT id, (row_number() OVER (ORDER BY id) - 1) / %s AS bucket
                FROM contacts
            ),
            buckets AS (
                SELECT bucket, MIN(id) AS start_id, MAX(id) AS last_id
                FROM numbered
                GROUP BY bucket
            )
            SELECT
                start_id,
                COALESCE(LEAD(start_id) OVER (ORDER BY bucket), last_id + 1) AS end_id
            FROM buckets
            ORDER BY bucket
        """

        rows = await fetch_all(query, (batch_size,))
        return [(int(row["start_id"]), int(row["end_id"])) for row in rows]

    async def fetch_contacts(self, start_id: int, end_id: int) -> list[Contact]:
        query = """
            SELECT
                id,
                email,
                name,
                status,
                gdpr_consent_at IS NOT NULL AS gdpr_consent
            FROM contacts
            WHERE id >= %s AND id < %s
            ORDER BY id ASC
        """

        rows = await fetch_all(query, (start_id, end_id))
        contacts: list[Contact] = []
        for row in rows:
            status = _STATUSES.get(row["status"]) if row["status"] else None
            if row["status"] and status is None:
                logger.debug("Contact has unrecognised status", contact_id=row["id"], status=row["status"])
            contacts.append(
                Contact(
                    id=int(row["id"]),
                    email=row.get("email"),
                    name=row.get("name"),
                    status=status,
                    gdpr_consent=bool(row["gdpr_consent"]),
                )
            )
        return contacts

    async def fetch_memberships(self, contact_ids: Sequence[int]) -> dict[int, frozenset[int]]:
        if not contact_ids:
            return {}

        query = """
            SELECT contact_id, array_agg(list_id) AS list_ids
            FROM list_memberships
            WHERE contact_id = ANY(%s)
            GROUP BY contact_id
        """

        rows = await fetch_all(query, (list(contact_ids),))
        return {int(row["contact_id"]): frozenset(row["list_ids"] or ()) for row in rows}

    async def existing_list_ids(self, list_ids: Collection[int]) -> frozenset[int]:
        if not list_ids:
            return frozenset()

        rows = await fetch_all("SELECT id FROM lists WHERE id = ANY(%s)", (list(list_ids),))
        return frozenset(int(row["id"]) for row in rows)


contact_directory = ContactDirectoryRepository()
