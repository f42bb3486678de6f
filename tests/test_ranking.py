import itertools

from flyer_wizard.models import RankingContext, ScoringWeights, WizardFilters
from flyer_wizard.ranking import (
    ensure_same_brand,
    filter_candidates,
    price_explanation,
    rank_candidates,
    score,
    summarize_decisions,
)
from helpers import make_candidate, make_item, make_offer, make_product


MILK = make_product(1, "Milk", brand="Dvaro", size=1.0, unit="l")
EXPIRED_MILK = make_offer(11, "Milk", "Dvaro", store_id=1, price=1.50, size=1.0, unit="l", current=False)
ITEM = make_item(1, MILK, EXPIRED_MILK)


def test_same_brand_same_store_offer_ranks_first_despite_price_increase():
    same = make_candidate(
        make_offer(101, "Milk", "Dvaro", store_id=1, price=1.60, size=1.0, unit="l"),
        raw_score=1.0,
        same_brand=True,
    )
    cheaper_other_brand = make_candidate(
        make_offer(102, "Milk", "Rokiskio", store_id=1, price=1.20, size=1.0, unit="l"),
        raw_score=0.8,
    )
    other_store = make_candidate(
        make_offer(104, "Milk", "Farm", store_id=2, price=1.00, size=1.0, unit="l"),
        raw_score=0.8,
    )

    ranked = rank_candidates(ITEM, [other_store, cheaper_other_brand, same], RankingContext())

    assert [c.offer_id for c in ranked] == [101, 102, 104]
    top = ranked[0]
    assert top.rank == 1
    assert top.score == 7.0
    assert top.breakdown.brand == 3.0
    assert top.breakdown.original_store == 2.0
    assert top.breakdown.size == 1.0
    assert top.breakdown.price == 0.0
    assert top.price_delta == 0.1
    assert top.explanation == "Same brand, similar size, €0.10 more expensive, at your usual store"


def test_score_adds_preferred_store_bonus_once():
    offer = make_offer(103, "Milk", "Dvaro", store_id=2, price=1.40, size=1.1, unit="L")
    candidate = make_candidate(offer, raw_score=0.5, same_brand=True)
    context = RankingContext(preferred_store_ids=[2, 2, 3])

    # 0.5 raw + 3 brand + 2 preferred + 1 size (10% off, unit folded) + 1 cheaper
    assert score(ITEM, candidate, context) == 7.5


def test_score_ignores_size_outside_tolerance_or_with_other_unit():
    big = make_candidate(make_offer(105, "Milk", store_id=3, price=2.0, size=1.5, unit="l"), raw_score=0.5)
    grams = make_candidate(make_offer(106, "Milk", store_id=3, price=2.0, size=1.0, unit="kg"), raw_score=0.5)

    assert score(ITEM, big, RankingContext()) == 0.5
    assert score(ITEM, grams, RankingContext()) == 0.5


def test_weights_come_from_context():
    candidate = make_candidate(make_offer(101, "Milk", "Dvaro", store_id=1, price=1.60), raw_score=1.0, same_brand=True)
    context = RankingContext(weights=ScoringWeights(same_brand=10.0, original_store=0.0))

    assert score(ITEM, candidate, context) == 11.0


def test_rank_is_identical_for_every_input_order():
    candidates = [
        make_candidate(make_offer(201, "Milk", store_id=2, price=1.20), raw_score=0.5),
        make_candidate(make_offer(202, "Milk", store_id=3, price=1.10), raw_score=0.5),
        make_candidate(make_offer(203, "Milk", store_id=3, price=1.10), raw_score=0.5),
        make_candidate(make_offer(204, "Milk", "Dvaro", store_id=4, price=1.70), raw_score=0.9, same_brand=True),
    ]
    expected = rank_candidates(ITEM, candidates, RankingContext())

    for permutation in itertools.permutations(candidates):
        ranked = rank_candidates(ITEM, list(permutation), RankingContext())
        assert ranked == expected

    # equal scores: cheaper first, then lower offer id
    assert [c.offer_id for c in expected] == [204, 202, 203, 201]


def test_ensure_same_brand_promotes_into_last_slot():
    others = [
        make_candidate(make_offer(300 + i, "Milk", store_id=1, price=1.0 + i / 10), raw_score=1.0)
        for i in range(5)
    ]
    same = make_candidate(make_offer(399, "Milk", "Dvaro", store_id=5, price=3.0), raw_score=0.1, same_brand=True)
    context = RankingContext(weights=ScoringWeights(same_brand=0.0, original_store=5.0))
    ranked = rank_candidates(ITEM, others + [same], context)
    assert ranked[-1].offer_id == 399

    shown = ensure_same_brand(ranked, top_k=3)

    assert [c.offer_id for c in shown] == [300, 301, 399]
    assert [c.rank for c in shown] == [1, 2, 3]
    assert shown[-1].promoted is True
    assert shown[-1].explanation.endswith("(same-brand alternative)")


def test_ensure_same_brand_leaves_top_k_alone_when_it_already_has_one():
    ranked = rank_candidates(
        ITEM,
        [
            make_candidate(make_offer(101, "Milk", "Dvaro", price=1.60), raw_score=1.0, same_brand=True),
            make_candidate(make_offer(102, "Milk", price=1.20), raw_score=0.9),
        ],
        RankingContext(),
    )
    assert ensure_same_brand(ranked, top_k=1) == ranked[:1]


def test_filter_candidates_applies_brand_and_price_strategy():
    ranked = rank_candidates(
        ITEM,
        [
            make_candidate(make_offer(101, "Milk", "Dvaro", price=1.60), raw_score=1.0, same_brand=True),
            make_candidate(make_offer(102, "Milk", price=2.40), raw_score=0.9),
        ],
        RankingContext(),
    )

    kept, reason = filter_candidates(ITEM, ranked, WizardFilters(max_price_increase_ratio=0.5))
    assert [c.offer_id for c in kept] == [101]
    assert reason is None

    kept, reason = filter_candidates(ITEM, ranked[1:], WizardFilters(same_brand_only=True))
    assert kept == []
    assert reason == "no same-brand offers found"

    kept, reason = filter_candidates(ITEM, [], WizardFilters())
    assert reason == "no matching offers found"


def test_price_explanation_formats():
    assert price_explanation(1.50, 1.50) == "same price"
    assert price_explanation(1.50, 1.00) == "€0.50 cheaper"
    assert price_explanation(6.00, 4.80) == "20% cheaper (€1.20)"
    assert price_explanation(10.00, 11.20) == "12% more expensive (€1.20)"
    assert price_explanation(None, 1.00) == ""


def test_summarize_decisions():
    assert summarize_decisions(3, 1, 1, 0) == "3 replaced, 1 kept without an offer and 1 removed"
    assert summarize_decisions(4, 0, 0, 0) == "All 4 items replaced with suggested alternatives"
    assert summarize_decisions(0, 0, 0, 0) == "No changes"
