"""
Shopping List Store

Per-list storage with an all-or-nothing batch update used by wizard
completion. Offer and product links are kept as JSON columns and turned
into models only here.
"""

import asyncio
import sqlite3
from datetime import datetime, timezone
from typing import Optional, Protocol

from flyer_wizard.database import Database
from flyer_wizard.errors import ListItemNotFound
from flyer_wizard.models import (
    CanonicalProduct,
    DecisionAction,
    FlyerOffer,
    ListChange,
    ListItem,
    OfferSnapshot,
)
from flyer_wizard.pipeline_logger import log_commit, log_snapshot
from flyer_wizard.snapshots import insert_snapshots


class ShoppingListStore(Protocol):
    async def get_items(self, list_id: int) -> list[ListItem]:
        ...

    async def get_migratable_items(self, list_id: int, at: datetime) -> list[ListItem]:
        ...

    async def apply_changes(self, list_id: int, changes: list[ListChange]) -> int:
        ...

    async def commit_migration(
        self,
        list_id: int,
        changes: list[ListChange],
        snapshots: list[OfferSnapshot],
    ) -> int:
        ...


class SQLiteShoppingListStore:
    def __init__(self, db: Database):
        self.db = db

    async def add_item(self, item: ListItem) -> ListItem:
        await asyncio.to_thread(self._insert, item)
        return item

    def _insert(self, item: ListItem) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO shopping_list_items (
                    id, list_id, description, quantity, offer_id, store_id, price,
                    product_id, offer_json, product_json, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item.id,
                    item.list_id,
                    item.description,
                    item.quantity,
                    item.offer.id if item.offer else None,
                    item.offer.store_id if item.offer else None,
                    item.offer.price if item.offer else None,
                    item.product.id if item.product else None,
                    item.offer.model_dump_json() if item.offer else None,
                    item.product.model_dump_json() if item.product else None,
                    _now(),
                ),
            )

    async def get_items(self, list_id: int) -> list[ListItem]:
        rows = await asyncio.to_thread(
            self.db.fetchall,
            "SELECT * FROM shopping_list_items WHERE list_id = ? ORDER BY id",
            (list_id,),
        )
        return [_row_to_item(row) for row in rows]

    async def get_item(self, item_id: int) -> Optional[ListItem]:
        row = await asyncio.to_thread(
            self.db.fetchone,
            "SELECT * FROM shopping_list_items WHERE id = ?",
            (item_id,),
        )
        return _row_to_item(row) if row else None

    async def get_migratable_items(self, list_id: int, at: datetime) -> list[ListItem]:
        """Items with a product master whose origin offer is gone or expired."""
        return [item for item in await self.get_items(list_id) if item.needs_migration(at)]

    async def apply_changes(self, list_id: int, changes: list[ListChange]) -> int:
        """
        Apply replace/keep/remove operations in one transaction.

        Raises ListItemNotFound (after rolling back) if any targeted row is
        missing or belongs to another list. Returns the number of rows touched.
        """
        applied, _ = await asyncio.to_thread(self._commit, list_id, changes, [])
        log_commit("List changes applied", {"list_id": list_id, "rows": applied})
        return applied

    async def commit_migration(
        self,
        list_id: int,
        changes: list[ListChange],
        snapshots: list[OfferSnapshot],
    ) -> int:
        """
        Write the offer snapshots and apply the list changes in one
        transaction, so a rolled-back update leaves no audit rows behind.
        Returns the number of new snapshot rows.
        """
        applied, recorded = await asyncio.to_thread(self._commit, list_id, changes, snapshots)
        log_snapshot("Snapshots recorded", {"requested": len(snapshots), "written": recorded})
        log_commit(
            "Migration committed",
            {"list_id": list_id, "rows": applied, "snapshots": recorded},
        )
        return recorded

    def _commit(
        self,
        list_id: int,
        changes: list[ListChange],
        snapshots: list[OfferSnapshot],
    ) -> tuple[int, int]:
        with self.db.transaction() as conn:
            recorded = insert_snapshots(conn, snapshots)
            applied = self._apply(conn, list_id, changes)
        return applied, recorded

    def _apply(self, conn: sqlite3.Connection, list_id: int, changes: list[ListChange]) -> int:
        applied = 0
        now = _now()
        for change in changes:
            if change.action == DecisionAction.SKIP:
                continue
            if change.action == DecisionAction.REPLACE:
                offer = change.offer
                if offer is None:
                    raise ValueError(f"replace for item {change.item_id} has no offer")
                cursor = conn.execute(
                    """
                    UPDATE shopping_list_items
                    SET offer_id = ?, store_id = ?, price = ?, offer_json = ?, updated_at = ?
                    WHERE id = ? AND list_id = ?
                    """,
                    (
                        offer.id,
                        offer.store_id,
                        offer.price,
                        offer.model_dump_json(),
                        now,
                        change.item_id,
                        list_id,
                    ),
                )
            elif change.action == DecisionAction.KEEP:
                cursor = conn.execute(
                    """
                    UPDATE shopping_list_items
                    SET offer_id = NULL, store_id = NULL, price = NULL, offer_json = NULL,
                        updated_at = ?
                    WHERE id = ? AND list_id = ?
                    """,
                    (now, change.item_id, list_id),
                )
            else:
                cursor = conn.execute(
                    "DELETE FROM shopping_list_items WHERE id = ? AND list_id = ?",
                    (change.item_id, list_id),
                )
            if cursor.rowcount == 0:
                raise ListItemNotFound(change.item_id)
            applied += 1
        return applied


def _row_to_item(row) -> ListItem:
    offer = FlyerOffer.model_validate_json(row["offer_json"]) if row["offer_json"] else None
    product = (
        CanonicalProduct.model_validate_json(row["product_json"]) if row["product_json"] else None
    )
    return ListItem(
        id=row["id"],
        list_id=row["list_id"],
        description=row["description"],
        quantity=row["quantity"],
        offer=offer,
        product=product,
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
