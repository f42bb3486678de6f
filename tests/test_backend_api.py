import asyncio
import json

from fastapi import Response
from starlette.requests import Request

from backend.api.routes import (
    apply_bulk_decision,
    complete_session,
    get_session_snapshots,
    get_suggestions,
    health_check,
    list_status,
    record_decision,
    start_session,
    status_for,
    wizard_error_handler,
)
from backend.api.schemas import (
    BulkDecisionRequest,
    CompleteRequest,
    DecisionRequest,
    StartSessionRequest,
)
from flyer_wizard.errors import (
    CommitFailed,
    InvalidDecision,
    ListLocked,
    SearchUnavailable,
    SessionExpired,
    SessionNotFound,
    SessionStoreUnavailable,
)


class FakeWizardService:
    def __init__(self, redis_ok: bool = True):
        self.redis_ok = redis_ok

    async def health_check(self):
        return {
            "redis": {"status": "ok", "latency_ms": 1} if self.redis_ok else {"status": "error", "error": "down"},
            "elasticsearch": {"status": "ok", "latency_ms": 3},
        }


def _request(path: str = "/api/wizard/sessions") -> Request:
    return Request({"type": "http", "method": "POST", "path": path, "headers": [], "query_string": b""})


async def _walk_session(manager):
    started = await start_session(request=StartSessionRequest(list_id=1, max_stores=1), manager=manager)
    session_id = started.session.id
    shown = await get_suggestions(session_id=session_id, manager=manager)
    await record_decision(
        session_id=session_id,
        request=DecisionRequest(item_id=shown.data.item_id, action="replace", offer_id=shown.data.suggestions[0].offer_id),
        manager=manager,
    )
    bulk = await apply_bulk_decision(
        session_id=session_id,
        request=BulkDecisionRequest(action="keep"),
        manager=manager,
    )
    return session_id, bulk


def test_wizard_routes_direct_call_walk_through(manager):
    session_id, bulk = asyncio.run(_walk_session(manager))

    assert bulk.data.applied_item_ids == [2, 3]
    assert bulk.data.progress.items_replaced == 1

    response = Response()
    done = asyncio.run(
        complete_session(
            session_id=session_id,
            response=response,
            manager=manager,
            request=CompleteRequest(idempotency_key="k1"),
        )
    )
    assert done.success is True
    assert done.status == "completed"
    assert done.result.items_replaced == 1
    assert done.result.items_kept == 2
    assert response.status_code == 200

    snapshots = asyncio.run(get_session_snapshots(session_id=session_id, manager=manager))
    assert len(snapshots.data) == done.result.snapshots_recorded
    assert [s.item_id for s in snapshots.data if s.selected] == [1]

    status = asyncio.run(list_status(list_id=1, manager=manager))
    assert status.has_active_session is False


def test_complete_reports_stale_data_as_conflict(manager, catalog):
    session_id, _ = asyncio.run(_walk_session(manager))
    catalog.bump()

    response = Response()
    outcome = asyncio.run(
        complete_session(session_id=session_id, response=response, manager=manager, idempotency_key="k2")
    )

    assert response.status_code == 409
    assert outcome.success is False
    assert outcome.status == "stale"
    assert outcome.stale.live_dataset_version == 2


def test_list_status_route(manager):
    status = asyncio.run(list_status(list_id=1, manager=manager))
    assert status.migratable_items == 3
    assert status.has_active_session is False
    assert status.active_session_id is None


def test_error_codes_map_to_http_status():
    assert status_for(SessionNotFound("s")) == 404
    assert status_for(ListLocked(1, "s")) == 409
    assert status_for(SessionExpired("s")) == 410
    assert status_for(InvalidDecision("bad")) == 422
    assert status_for(SearchUnavailable("down")) == 503
    assert status_for(SessionStoreUnavailable("down")) == 503
    assert status_for(CommitFailed("rolled back")) == 500


def test_error_handler_renders_error_response():
    response = asyncio.run(wizard_error_handler(_request(), ListLocked(1, "s-1")))

    assert response.status_code == 409
    body = json.loads(response.body)
    assert body == {
        "success": False,
        "error": "shopping list 1 is already being migrated by session s-1",
        "code": "LIST_LOCKED",
        "details": {"list_id": 1, "session_id": "s-1"},
    }
    assert "retry-after" not in response.headers


def test_error_handler_adds_retry_after_for_retryable_errors():
    response = asyncio.run(wizard_error_handler(_request(), SearchUnavailable("search is down")))
    assert response.status_code == 503
    assert response.headers["retry-after"] == "1"


def test_health_route_reports_unhealthy_dependency():
    healthy = asyncio.run(health_check(service=FakeWizardService()))
    assert healthy.status == "healthy"

    degraded = asyncio.run(health_check(service=FakeWizardService(redis_ok=False)))
    assert degraded.status == "unhealthy"
    assert degraded.services["redis"].error == "down"
