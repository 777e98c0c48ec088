"""Append-only log of persisted repair ledgers, backed by SQLite."""

import json

from citelink.db.connection import Database
from citelink.models import RepairLogEntry, RepairRecord


class RepairLog:
    """Append-only audit trail of every repair pass that changed the tree."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def append(self, entry: RepairLogEntry) -> int:
        """Append a ledger and return the assigned sequence_num.

        Raises IntegrityError if repair_id is not unique.
        """
        cursor = await self._db.execute(
            """
            INSERT INTO repair_log (repair_id, timestamp, source, repairs)
            VALUES (?, ?, ?, ?)
            """,
            (
                entry.repair_id,
                entry.timestamp.isoformat(),
                entry.source,
                json.dumps([r.to_storage() for r in entry.repairs]),
            ),
        )
        assert cursor.lastrowid is not None
        return cursor.lastrowid

    async def get_entries(self, limit: int | None = None) -> list[RepairLogEntry]:
        """Get logged ledgers, oldest first. ``limit`` keeps only the most recent."""
        if limit is None:
            rows = await self._db.fetchall(
                "SELECT * FROM repair_log ORDER BY sequence_num",
            )
        else:
            rows = await self._db.fetchall(
                "SELECT * FROM (SELECT * FROM repair_log ORDER BY sequence_num DESC LIMIT ?) "
                "ORDER BY sequence_num",
                (limit,),
            )
        return [self._row_to_entry(row) for row in rows]

    @staticmethod
    def _row_to_entry(row) -> RepairLogEntry:
        """Convert a database row to a RepairLogEntry."""
        return RepairLogEntry(
            repair_id=row["repair_id"],
            timestamp=row["timestamp"],
            source=row["source"],
            repairs=[RepairRecord.model_validate(r) for r in json.loads(row["repairs"])],
            sequence_num=row["sequence_num"],
        )
