"""
Offer Snapshot Recorder

Append-only audit rows capturing an offer exactly as it was presented or
selected. One row per (item, session, offer, store); recording the same
tuple again is a no-op, so upstream retries are safe. Rows are written by
the shopping list store inside its commit transaction.
"""

import asyncio
import sqlite3
from datetime import datetime

from flyer_wizard.database import Database
from flyer_wizard.models import CandidateSuggestion, ListItem, OfferSnapshot


SNAPSHOT_REASON = "wizard_migration"

INSERT_SNAPSHOT = """
INSERT OR IGNORE INTO offer_snapshots (
    item_id, session_id, offer_id, canonical_product_id, store_id, product_name,
    brand, price, valid_from, valid_to, rank, score, selected, explanation,
    snapshot_reason, created_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


def build_snapshot(
    item: ListItem,
    session_id: str,
    candidate: CandidateSuggestion,
    selected: bool,
    created_at: datetime,
) -> OfferSnapshot:
    offer = candidate.offer
    return OfferSnapshot(
        item_id=item.id,
        session_id=session_id,
        offer_id=offer.id,
        canonical_product_id=offer.canonical_product_id,
        store_id=offer.store_id,
        product_name=offer.name,
        brand=offer.brand,
        price=offer.price,
        valid_from=offer.valid_from,
        valid_to=offer.valid_to,
        rank=candidate.rank,
        score=candidate.score,
        selected=selected,
        explanation=candidate.explanation,
        snapshot_reason=SNAPSHOT_REASON,
        created_at=created_at,
    )


def insert_snapshots(conn: sqlite3.Connection, snapshots: list[OfferSnapshot]) -> int:
    """
    Insert snapshot rows on an open connection; the caller owns the
    transaction. Returns the number of new rows (duplicates are ignored).
    """
    written = 0
    for s in snapshots:
        cursor = conn.execute(
            INSERT_SNAPSHOT,
            (
                s.item_id,
                s.session_id,
                s.offer_id,
                s.canonical_product_id,
                s.store_id,
                s.product_name,
                s.brand,
                s.price,
                s.valid_from.isoformat() if s.valid_from else None,
                s.valid_to.isoformat() if s.valid_to else None,
                s.rank,
                s.score,
                int(s.selected),
                s.explanation,
                s.snapshot_reason,
                s.created_at.isoformat(),
            ),
        )
        written += cursor.rowcount
    return written


class OfferSnapshotRecorder:
    def __init__(self, db: Database):
        self.db = db

    async def list_for_session(self, session_id: str) -> list[OfferSnapshot]:
        rows = await asyncio.to_thread(
            self.db.fetchall,
            "SELECT * FROM offer_snapshots WHERE session_id = ? ORDER BY item_id, rank, offer_id",
            (session_id,),
        )
        return [
            OfferSnapshot(
                item_id=row["item_id"],
                session_id=row["session_id"],
                offer_id=row["offer_id"],
                canonical_product_id=row["canonical_product_id"],
                store_id=row["store_id"],
                product_name=row["product_name"],
                brand=row["brand"],
                price=row["price"],
                valid_from=row["valid_from"],
                valid_to=row["valid_to"],
                rank=row["rank"],
                score=row["score"],
                selected=bool(row["selected"]),
                explanation=row["explanation"],
                snapshot_reason=row["snapshot_reason"],
                created_at=row["created_at"],
            )
            for row in rows
        ]
