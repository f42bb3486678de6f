from flyer_wizard.snapshots import SNAPSHOT_REASON, build_snapshot, insert_snapshots
from helpers import MILK, NOW, _run, make_candidate, make_item, make_offer


ITEM = make_item(1, MILK, make_offer(11, "Milk", "Dvaro", price=1.50, current=False))


def _candidate(offer_id: int, rank: int, price: float = 1.6):
    candidate = make_candidate(make_offer(offer_id, "Milk", "Dvaro", store_id=1, price=price, product_id=1))
    return candidate.model_copy(update={"rank": rank, "score": 7.0, "explanation": "Same brand"})


def _insert(db, snapshots):
    with db.transaction() as conn:
        return insert_snapshots(conn, snapshots)


def test_snapshot_is_idempotent_per_item_session_offer_and_store(db, recorder):
    candidate = _candidate(101, rank=1)
    snapshot = build_snapshot(ITEM, "s-1", candidate, selected=True, created_at=NOW)

    assert _insert(db, [snapshot]) == 1
    assert _insert(db, [snapshot]) == 0

    rows = _run(recorder.list_for_session("s-1"))
    assert len(rows) == 1
    stored = rows[0]
    assert stored.offer_id == 101
    assert stored.canonical_product_id == 1
    assert stored.price == 1.6
    assert stored.selected is True
    assert stored.snapshot_reason == SNAPSHOT_REASON
    assert stored.valid_to == candidate.offer.valid_to


def test_insert_counts_only_new_rows_and_lists_by_rank(db, recorder):
    snapshots = [
        build_snapshot(ITEM, "s-1", _candidate(102, rank=2, price=1.2), False, NOW),
        build_snapshot(ITEM, "s-1", _candidate(101, rank=1), True, NOW),
    ]

    assert _insert(db, snapshots) == 2
    assert _insert(db, snapshots) == 0
    assert _insert(db, []) == 0

    rows = _run(recorder.list_for_session("s-1"))
    assert [(r.offer_id, r.rank, r.selected) for r in rows] == [(101, 1, True), (102, 2, False)]
    assert _run(recorder.list_for_session("s-2")) == []


def test_same_offer_in_another_session_is_a_new_snapshot(db):
    candidate = _candidate(101, rank=1)

    assert _insert(db, [build_snapshot(ITEM, "s-1", candidate, False, NOW)]) == 1
    assert _insert(db, [build_snapshot(ITEM, "s-2", candidate, False, NOW)]) == 1
