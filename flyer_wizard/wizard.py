"""
Wizard Session Manager

State machine for migrating one shopping list's expired items:

    initialized → in_progress → reviewing → completed
          └───────────┴────────────┴──────→ cancelled | expired

- initialized:  session created, no suggestions generated yet
- in_progress:  suggestions generated / decisions being recorded
- reviewing:    every item has a decision (skip included)
- completed, cancelled: explicit caller action
- expired:      detected lazily on access once `expires_at` has passed

Every mutating operation runs under the session lock from the session
store and fails fast with SessionBusy when another one holds it.
"""

import uuid
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from flyer_wizard.candidates import TwoPassCandidateFinder
from flyer_wizard.errors import (
    CommitFailed,
    InvalidDecision,
    ListLocked,
    NoMigratableItems,
    NoProductMaster,
    SessionExpired,
    SessionNotFound,
    SessionTerminal,
)
from flyer_wizard.list_store import ShoppingListStore
from flyer_wizard.models import (
    BulkDecisionResult,
    CandidateSuggestion,
    CompletionResult,
    Decision,
    DecisionAction,
    FlyerOffer,
    ItemSuggestions,
    ListChange,
    NoCandidates,
    OfferSnapshot,
    RankingContext,
    SessionItem,
    StaleData,
    StaleItem,
    WizardConfig,
    WizardFilters,
    WizardSession,
    WizardState,
)
from flyer_wizard.normalize import normalize_text
from flyer_wizard.pipeline_logger import (
    log_commit,
    log_error,
    log_session,
    log_wizard,
    trace_request,
    trace_stage,
)
from flyer_wizard.ranking import filter_candidates, rank_candidates, summarize_decisions
from flyer_wizard.search_adapter import SimilaritySearch
from flyer_wizard.session_store import CatalogVersionSource, RedisSessionStore, session_expiry
from flyer_wizard.snapshots import OfferSnapshotRecorder, build_snapshot
from flyer_wizard.store_selection import clamp_max_stores, filter_to_stores, select_stores


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WizardSessionManager:
    """
    Usage:
        manager = WizardSessionManager(sessions, lists, search, snapshots, catalog)
        session = await manager.start_session(list_id=42)
        shown = await manager.get_suggestions(session.id)
        await manager.record_decision(session.id, shown.item_id, "replace", shown.suggestions[0].offer_id)
        result = await manager.complete(session.id, idempotency_key="abc")
    """

    def __init__(
        self,
        sessions: RedisSessionStore,
        lists: ShoppingListStore,
        search: SimilaritySearch,
        snapshots: OfferSnapshotRecorder,
        catalog: CatalogVersionSource,
        config: Optional[WizardConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.sessions = sessions
        self.lists = lists
        self.search = search
        self.snapshots = snapshots
        self.catalog = catalog
        self.config = config or WizardConfig()
        self.clock = clock
        self.finder = TwoPassCandidateFinder(search, self.config)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start_session(
        self,
        list_id: int,
        filters: Optional[WizardFilters] = None,
        user_id: Optional[int] = None,
    ) -> WizardSession:
        """
        Create a session for the list's migratable items.

        Raises ListLocked if another non-terminal session holds the list and
        NoMigratableItems if nothing on the list needs migration.
        """
        with trace_request("start_session", data={"list_id": list_id}):
            now = self.clock()
            await self._reclaim_list(list_id, now)

            items = await self.lists.get_migratable_items(list_id, now)
            if not items:
                raise NoMigratableItems(list_id)

            filters = filters or WizardFilters(max_stores=self.config.max_stores)
            filters = filters.model_copy(update={"max_stores": clamp_max_stores(filters.max_stores)})

            session = WizardSession(
                id=str(uuid.uuid4()),
                list_id=list_id,
                user_id=user_id,
                filters=filters,
                dataset_version=await self.catalog.current_version(),
                items=[SessionItem(item=item) for item in items],
                created_at=now,
                expires_at=session_expiry(now, self.config),
                updated_at=now,
            )
            if not await self.sessions.claim_list(list_id, session.id):
                holder = await self.sessions.get_active_session_id(list_id)
                raise ListLocked(list_id, holder or "")

            session = await self.sessions.save(session)
            log_session(
                "Session started",
                {
                    "session": session.id,
                    "list_id": list_id,
                    "items": len(session.items),
                    "dataset_version": session.dataset_version,
                },
            )
            return session

    async def _reclaim_list(self, list_id: int, now: datetime) -> None:
        holder_id = await self.sessions.get_active_session_id(list_id)
        if holder_id is None:
            return
        holder = await self.sessions.get(holder_id)
        if holder is not None and not holder.is_terminal:
            if not holder.is_expired(now):
                raise ListLocked(list_id, holder_id)
            await self._expire(holder, now)
            return
        await self.sessions.release_list(list_id, holder_id)

    async def cancel(self, session_id: str) -> WizardSession:
        with trace_request("cancel", session_id):
            async with self.sessions.lock(session_id):
                now = self.clock()
                session = await self._load_active(session_id, now)
                revision = session.revision
                session.state = WizardState.CANCELLED
                session.updated_at = now
                session = await self.sessions.save(session, expected_revision=revision)
                await self.sessions.release_list(session.list_id, session.id)
                log_session("Session cancelled", {"session": session_id})
                return session

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_session(self, session_id: str) -> WizardSession:
        """Load a session, flipping it to expired if its time budget is spent."""
        now = self.clock()
        session = await self.sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if session.is_expired(now):
            session = await self._expire(session, now)
        return session

    async def get_active_session(self, list_id: int) -> Optional[WizardSession]:
        session_id = await self.sessions.get_active_session_id(list_id)
        if session_id is None:
            return None
        session = await self.sessions.get(session_id)
        if session is None or session.is_terminal:
            return None
        now = self.clock()
        if session.is_expired(now):
            await self._expire(session, now)
            return None
        return session

    async def has_active_session(self, list_id: int) -> bool:
        return await self.get_active_session(list_id) is not None

    async def count_migratable_items(self, list_id: int) -> int:
        return len(await self.lists.get_migratable_items(list_id, self.clock()))

    async def get_snapshots(self, session_id: str) -> list[OfferSnapshot]:
        """Audit rows written when the session completed (empty before that)."""
        await self.get_session(session_id)
        return await self.snapshots.list_for_session(session_id)

    # =========================================================================
    # Suggestions
    # =========================================================================

    async def get_suggestions(self, session_id: str, item_id: Optional[int] = None) -> ItemSuggestions:
        """
        Suggestions for `item_id`, or for the current item when omitted.

        The first call generates suggestions for every item (store selection
        spans the whole session). Items whose suggestions were cleared by a
        staleness check are regenerated within the already selected stores.
        """
        with trace_request("get_suggestions", session_id, {"item_id": item_id}):
            async with self.sessions.lock(session_id) as lock:
                now = self.clock()
                session = await self._load_active(session_id, now)
                revision = session.revision

                index, session_item = self._target_item(session, item_id)
                changed = False
                if session.selected_stores is None:
                    await self._generate_all(session, now, lock)
                    changed = True
                elif session_item.suggestions is None:
                    await self._regenerate_item(session, session_item, now)
                    changed = True

                if session.state == WizardState.INITIALIZED:
                    session.state = WizardState.IN_PROGRESS
                    changed = True

                if changed:
                    session.updated_at = now
                    session = await self.sessions.save(session, expected_revision=revision)
                    session_item = session.items[index]

                return ItemSuggestions(
                    session_id=session.id,
                    item_id=session_item.item_id,
                    item_index=index,
                    suggestions=session_item.suggestions or [],
                    no_candidates=session_item.no_candidates,
                    selected_store_ids=session.selected_stores.store_ids if session.selected_stores else [],
                )

    def _target_item(self, session: WizardSession, item_id: Optional[int]) -> tuple[int, SessionItem]:
        if item_id is None:
            index = min(session.current_item_index, len(session.items) - 1)
            return index, session.items[index]
        for index, session_item in enumerate(session.items):
            if session_item.item_id == item_id:
                return index, session_item
        raise InvalidDecision(
            f"item {item_id} is not part of session {session.id}",
            {"item_id": item_id, "session_id": session.id},
        )

    def _ranking_context(self, session: WizardSession) -> RankingContext:
        return RankingContext(
            preferred_store_ids=session.filters.preferred_store_ids,
            weights=self.config.weights,
            size_tolerance=self.config.size_tolerance,
            currency_symbol=self.config.currency_symbol,
        )

    async def _build_pool(
        self,
        session: WizardSession,
        session_item: SessionItem,
        now: datetime,
    ) -> tuple[list[CandidateSuggestion], Optional[NoCandidates]]:
        item = session_item.item
        try:
            found = await self.finder.find_candidates(item, session.filters, as_of=now)
        except NoProductMaster as e:
            return [], NoCandidates(item_id=item.id, reason=e.message, manual_search_required=True)

        ranked = rank_candidates(item, found, self._ranking_context(session))
        kept, reason = filter_candidates(item, ranked, session.filters)
        if reason:
            return [], NoCandidates(item_id=item.id, reason=reason)
        return kept, None

    async def _generate_all(self, session: WizardSession, now: datetime, lock=None) -> None:
        pools: dict[int, list[CandidateSuggestion]] = {}
        with trace_stage("SEARCH", f"candidates for {len(session.items)} items"):
            for session_item in session.items:
                if lock is not None:
                    # One search round per item can outlast the lock TTL.
                    await self.sessions.keep_alive(lock, session.id)
                pool, no_candidates = await self._build_pool(session, session_item, now)
                pools[session_item.item_id] = pool
                session_item.pool_size = len(pool)
                session_item.no_candidates = no_candidates

        with trace_stage("STORES", "store selection"):
            selection = select_stores(pools, session.filters.max_stores, self.config)
        session.selected_stores = selection

        for session_item in session.items:
            shown = filter_to_stores(pools[session_item.item_id], selection.store_ids, self.config.top_k)
            session_item.suggestions = shown
            if not shown and session_item.no_candidates is None:
                session_item.no_candidates = NoCandidates(
                    item_id=session_item.item_id,
                    reason="no offers at the selected stores",
                )

        log_wizard(
            "Suggestions generated",
            {
                "session": session.id,
                "items": len(session.items),
                "stores": selection.store_ids,
                "no_candidates": sum(1 for i in session.items if i.no_candidates),
            },
        )

    async def _regenerate_item(self, session: WizardSession, session_item: SessionItem, now: datetime) -> None:
        pool, no_candidates = await self._build_pool(session, session_item, now)
        store_ids = session.selected_stores.store_ids if session.selected_stores else []
        shown = filter_to_stores(pool, store_ids, self.config.top_k)
        session_item.pool_size = len(pool)
        session_item.suggestions = shown
        session_item.no_candidates = no_candidates
        if not shown and no_candidates is None:
            session_item.no_candidates = NoCandidates(
                item_id=session_item.item_id,
                reason="no offers at the selected stores",
            )
        log_wizard(
            "Suggestions regenerated",
            {"session": session.id, "item_id": session_item.item_id, "shown": len(shown)},
        )

    # =========================================================================
    # Decisions
    # =========================================================================

    async def record_decision(
        self,
        session_id: str,
        item_id: int,
        action: Union[DecisionAction, str],
        offer_id: Optional[int] = None,
    ) -> WizardSession:
        """
        Record (or overwrite) the decision for one item.

        Replace must name an offer from the item's most recently generated
        suggestions; anything else is rejected with InvalidDecision and the
        session is left untouched.
        """
        with trace_request("record_decision", session_id, {"item_id": item_id, "action": action}):
            async with self.sessions.lock(session_id):
                now = self.clock()
                session = await self._load_active(session_id, now)
                revision = session.revision
                action = _parse_action(action)

                _, session_item = self._target_item(session, item_id)
                if action == DecisionAction.REPLACE:
                    if offer_id is None:
                        raise InvalidDecision(
                            "replace requires an offer_id",
                            {"item_id": item_id},
                        )
                    if session_item.find_suggestion(offer_id) is None:
                        raise InvalidDecision(
                            f"offer {offer_id} is not among the current suggestions for item {item_id}",
                            {"item_id": item_id, "offer_id": offer_id},
                        )
                else:
                    offer_id = None

                session.decisions[item_id] = Decision(
                    item_id=item_id,
                    action=action,
                    offer_id=offer_id,
                    decided_at=now,
                )
                self._advance(session)
                session.updated_at = now
                session = await self.sessions.save(session, expected_revision=revision)
                log_wizard(
                    "Decision recorded",
                    {
                        "session": session_id,
                        "item_id": item_id,
                        "action": action.value,
                        "offer_id": offer_id,
                        "state": session.state.value,
                    },
                )
                return session

    async def apply_bulk_decision(
        self,
        session_id: str,
        action: Union[DecisionAction, str],
        item_ids: Optional[list[int]] = None,
        category: Optional[str] = None,
    ) -> BulkDecisionResult:
        """
        Apply one action to every undecided item matching `item_ids` and/or
        `category` (all undecided items when both are omitted).

        Replace uses each item's best suggestion within the selected stores;
        items without one are left undecided.
        """
        with trace_request("apply_bulk_decision", session_id, {"action": action}):
            async with self.sessions.lock(session_id) as lock:
                now = self.clock()
                session = await self._load_active(session_id, now)
                revision = session.revision
                action = _parse_action(action)

                if item_ids is not None:
                    unknown = [i for i in item_ids if session.get_item(i) is None]
                    if unknown:
                        raise InvalidDecision(
                            f"items {unknown} are not part of session {session_id}",
                            {"item_ids": unknown},
                        )

                if action == DecisionAction.REPLACE and session.selected_stores is None:
                    await self._generate_all(session, now, lock)

                wanted = set(item_ids) if item_ids is not None else None
                category_key = normalize_text(category) if category else None
                applied: list[int] = []
                untouched: list[int] = []

                for session_item in session.undecided_items():
                    if wanted is not None and session_item.item_id not in wanted:
                        continue
                    if category_key is not None and _item_category(session_item) != category_key:
                        continue

                    offer_id = None
                    if action == DecisionAction.REPLACE:
                        best = next(
                            (s for s in session_item.suggestions or [] if not s.out_of_selection),
                            None,
                        )
                        if best is None:
                            untouched.append(session_item.item_id)
                            continue
                        offer_id = best.offer_id

                    session.decisions[session_item.item_id] = Decision(
                        item_id=session_item.item_id,
                        action=action,
                        offer_id=offer_id,
                        decided_at=now,
                        bulk=True,
                    )
                    applied.append(session_item.item_id)

                if session.state == WizardState.INITIALIZED:
                    session.state = WizardState.IN_PROGRESS
                self._advance(session)
                session.updated_at = now
                session = await self.sessions.save(session, expected_revision=revision)

                explanation = _bulk_explanation(action, len(applied), len(untouched))
                log_wizard(
                    "Bulk decision applied",
                    {"session": session_id, "action": action.value, "applied": applied, "untouched": untouched},
                )
                return BulkDecisionResult(
                    session_id=session.id,
                    action=action,
                    applied_item_ids=applied,
                    untouched_item_ids=untouched,
                    explanation=explanation,
                    progress=session.progress(),
                )

    def _advance(self, session: WizardSession) -> None:
        """Move the cursor to the next undecided item and update the state."""
        total = len(session.items)
        if session.all_decided():
            session.current_item_index = total
            session.state = WizardState.REVIEWING
            return

        start = min(session.current_item_index, total)
        order = list(range(start, total)) + list(range(0, start))
        for index in order:
            if session.items[index].item_id not in session.decisions:
                session.current_item_index = index
                break
        session.state = WizardState.IN_PROGRESS

    # =========================================================================
    # Completion
    # =========================================================================

    async def complete(
        self,
        session_id: str,
        idempotency_key: Optional[str] = None,
    ) -> Union[CompletionResult, StaleData]:
        """
        Validate freshness and apply every decision to the list atomically.

        A repeated call with the same idempotency key returns the stored
        result without touching the catalog or the list. On StaleData nothing
        is applied and the session stays in reviewing.
        """
        with trace_request("complete", session_id):
            async with self.sessions.lock(session_id):
                now = self.clock()

                if idempotency_key:
                    cached = await self._cached_completion(session_id, idempotency_key)
                    if cached is not None:
                        log_commit("Idempotent replay", {"session": session_id})
                        return cached

                session = await self._load_active(session_id, now)
                revision = session.revision
                if session.state != WizardState.REVIEWING:
                    undecided = [i.item_id for i in session.undecided_items()]
                    raise InvalidDecision(
                        f"{len(undecided)} items still need a decision",
                        {"session_id": session_id, "undecided_item_ids": undecided},
                    )

                stale = await self._check_staleness(session, now)
                if stale is not None:
                    session.updated_at = now
                    await self.sessions.save(session, expected_revision=revision)
                    return stale

                # Snapshots share the list update's transaction: a rollback
                # must not leave selected=True rows behind for a retry to keep.
                snapshots = self._completion_snapshots(session, now)
                changes = self._list_changes(session)
                try:
                    with trace_stage("COMMIT", f"{len(changes)} list changes, {len(snapshots)} snapshots"):
                        recorded = await self.lists.commit_migration(session.list_id, changes, snapshots)
                except Exception as e:
                    log_error("COMMIT", f"List update rolled back for session {session_id}", e)
                    raise CommitFailed(
                        "shopping list update failed; no changes were applied",
                        {"session_id": session_id, "list_id": session.list_id},
                    ) from e

                result = self._completion_result(session, recorded, now)
                session.state = WizardState.COMPLETED
                session.completion = result
                session.idempotency_key = idempotency_key
                session.updated_at = now
                await self.sessions.save(session, expected_revision=revision)
                if idempotency_key:
                    await self.sessions.store_completion(session_id, idempotency_key, result)
                await self.sessions.release_list(session.list_id, session.id)

                log_commit(
                    "Session completed",
                    {"session": session_id, "summary": result.summary, "snapshots": recorded},
                )
                return result

    async def _cached_completion(self, session_id: str, key: str) -> Optional[CompletionResult]:
        cached = await self.sessions.get_completion(session_id, key)
        if cached is not None:
            return cached
        session = await self.sessions.get(session_id)
        if session is not None and session.idempotency_key == key and session.completion:
            return session.completion
        return None

    async def _check_staleness(self, session: WizardSession, now: datetime) -> Optional[StaleData]:
        """
        Compare the session with the live catalog.

        A version change always yields StaleData (the session is re-stamped
        and the offending decisions flagged). With an unchanged version only
        decisions whose offer validity lapsed are flagged.
        """
        live_version = await self.catalog.current_version()
        version_changed = live_version != session.dataset_version
        replaced = {
            d.item_id: d.offer_id
            for d in session.decisions.values()
            if d.action == DecisionAction.REPLACE and d.offer_id is not None and not d.stale
        }

        stale_items: list[StaleItem] = []
        if version_changed:
            live_offers = await self.search.get_offers(list(replaced.values()))
        else:
            live_offers = None

        for item_id, offer_id in sorted(replaced.items()):
            shown = session.get_item(item_id).find_suggestion(offer_id)
            if live_offers is None:
                current: Optional[FlyerOffer] = shown.offer if shown else None
            else:
                current = live_offers.get(offer_id)
            reason = _stale_reason(shown.offer if shown else None, current, now)
            if reason:
                stale_items.append(StaleItem(item_id=item_id, offer_id=offer_id, reason=reason))

        for decision in session.stale_decisions():
            stale_items.append(
                StaleItem(
                    item_id=decision.item_id,
                    offer_id=decision.offer_id or 0,
                    reason="decision needs review",
                )
            )

        if not version_changed and not stale_items:
            return None

        for stale_item in stale_items:
            decision = session.decisions[stale_item.item_id]
            decision.stale = True
            session.get_item(stale_item.item_id).suggestions = None
        previous_version = session.dataset_version
        session.dataset_version = live_version
        if stale_items:
            first_stale = session.items.index(session.get_item(stale_items[0].item_id))
            session.current_item_index = first_stale

        message = (
            f"catalog changed since the session started; {len(stale_items)} decisions need review"
            if version_changed
            else f"{len(stale_items)} selected offers are no longer valid"
        )
        log_wizard(
            "Stale data detected",
            {
                "session": session.id,
                "dataset_version": previous_version,
                "live_dataset_version": live_version,
                "stale_items": [s.item_id for s in stale_items],
            },
        )
        return StaleData(
            session_id=session.id,
            dataset_version=previous_version,
            live_dataset_version=live_version,
            stale_items=stale_items,
            message=message,
        )

    def _completion_snapshots(self, session: WizardSession, now: datetime) -> list[OfferSnapshot]:
        snapshots = []
        for session_item in session.items:
            decision = session.decisions.get(session_item.item_id)
            if decision is None:
                continue
            for suggestion in session_item.suggestions or []:
                selected = (
                    decision.action == DecisionAction.REPLACE
                    and decision.offer_id == suggestion.offer_id
                )
                snapshots.append(build_snapshot(session_item.item, session.id, suggestion, selected, now))
        return snapshots

    def _list_changes(self, session: WizardSession) -> list[ListChange]:
        changes = []
        for session_item in session.items:
            decision = session.decisions[session_item.item_id]
            if decision.action == DecisionAction.SKIP:
                continue
            offer = None
            if decision.action == DecisionAction.REPLACE:
                offer = session_item.find_suggestion(decision.offer_id).offer
            changes.append(ListChange(item_id=session_item.item_id, action=decision.action, offer=offer))
        return changes

    def _completion_result(self, session: WizardSession, recorded: int, now: datetime) -> CompletionResult:
        progress = session.progress()
        stores = set()
        total = 0.0
        for session_item in session.items:
            decision = session.decisions[session_item.item_id]
            if decision.action != DecisionAction.REPLACE:
                continue
            offer = session_item.find_suggestion(decision.offer_id).offer
            stores.add(offer.store_id)
            total += offer.price * session_item.item.quantity

        return CompletionResult(
            session_id=session.id,
            list_id=session.list_id,
            items_replaced=progress.items_replaced,
            items_kept=progress.items_kept,
            items_removed=progress.items_removed,
            items_skipped=progress.items_skipped,
            snapshots_recorded=recorded,
            store_count=len(stores),
            total_estimated_price=round(total, 2),
            summary=summarize_decisions(
                progress.items_replaced,
                progress.items_kept,
                progress.items_removed,
                progress.items_skipped,
            ),
            completed_at=now,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _load_active(self, session_id: str, now: datetime) -> WizardSession:
        session = await self.sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if session.is_expired(now):
            await self._expire(session, now)
            raise SessionExpired(session_id)
        if session.is_terminal:
            if session.state == WizardState.EXPIRED:
                raise SessionExpired(session_id)
            raise SessionTerminal(session_id, session.state.value)
        return session

    async def _expire(self, session: WizardSession, now: datetime) -> WizardSession:
        session.state = WizardState.EXPIRED
        session.updated_at = now
        session = await self.sessions.save(session)
        await self.sessions.release_list(session.list_id, session.id)
        log_session("Session expired", {"session": session.id, "expires_at": session.expires_at.isoformat()})
        return session


def _parse_action(action: Union[DecisionAction, str]) -> DecisionAction:
    try:
        return DecisionAction(action)
    except ValueError:
        raise InvalidDecision(f"unknown decision action: {action}", {"action": str(action)})


def _item_category(session_item: SessionItem) -> str:
    product = session_item.item.product
    return normalize_text(product.category) if product and product.category else ""


def _stale_reason(shown: Optional[FlyerOffer], current: Optional[FlyerOffer], now: datetime) -> str:
    if current is None:
        return "offer is no longer available"
    if not current.is_valid_at(now):
        return "offer has expired"
    if shown is not None and abs(current.price - shown.price) >= 0.01:
        return f"price changed from {shown.price:.2f} to {current.price:.2f}"
    return ""


def _bulk_explanation(action: DecisionAction, applied: int, untouched: int) -> str:
    verbs = {
        DecisionAction.REPLACE: "replaced",
        DecisionAction.KEEP: "kept",
        DecisionAction.REMOVE: "removed",
        DecisionAction.SKIP: "skipped",
    }
    noun = "item" if applied == 1 else "items"
    text = f"{applied} {noun} {verbs[action]}"
    if untouched:
        text += f", {untouched} left for manual review"
    return text
