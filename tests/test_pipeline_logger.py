import importlib
import logging

import pytest


def _reload_pipeline_logger(monkeypatch, debug_log: bool):
    monkeypatch.setenv("DEBUG_LOG", "true" if debug_log else "false")
    monkeypatch.setenv("DEBUG_MODE", "false")
    monkeypatch.setenv("USE_LOGFIRE", "false")

    import flyer_wizard.pipeline_logger as pipeline_logger

    return importlib.reload(pipeline_logger)


def _capture(monkeypatch, pl):
    events = []

    def fake_log(level, message, extra=None, exc_info=None):
        events.append((level, message, extra))

    monkeypatch.setattr(pl.pipeline_logger, "log", fake_log)
    return events


def test_non_debug_mode_keeps_only_wizard_requests_and_errors(monkeypatch):
    pl = _reload_pipeline_logger(monkeypatch, debug_log=False)
    events = _capture(monkeypatch, pl)

    pl.log_pipeline("SEARCH", "normal info", level=logging.INFO)
    pl.log_pipeline("WIZARD", "WIZARD_REQUEST start_session", level=logging.INFO)
    pl.log_pipeline("SEARCH", "something failed", level=logging.ERROR)

    assert len(events) == 2
    assert events[0][1].startswith("WIZARD_REQUEST")
    assert events[1][0] == logging.ERROR


def test_debug_mode_logs_normal_events(monkeypatch):
    pl = _reload_pipeline_logger(monkeypatch, debug_log=True)
    events = _capture(monkeypatch, pl)

    pl.log_stores("Stores selected", {"selected": [1, 2]})

    assert len(events) == 1
    assert events[0][2]["stage"] == "STORES"
    assert '"selected": [1, 2]' in events[0][1]


def test_truncate_data_redacts_sensitive_keys_and_long_values(monkeypatch):
    pl = _reload_pipeline_logger(monkeypatch, debug_log=True)

    data = {
        "idempotency_key": "retry-123",
        "query": "x" * 200,
        "offers": list(range(10)),
        "nested": {"password": "p", "ok": "yes"},
    }
    out = pl._truncate_data(data, max_len=20)

    assert out["idempotency_key"] == "***REDACTED***"
    assert out["query"].endswith("...")
    assert out["offers"] == "[10 items]"
    assert out["nested"]["password"] == "***REDACTED***"
    assert out["nested"]["ok"] == "yes"


def test_trace_stage_appends_stage_result(monkeypatch):
    pl = _reload_pipeline_logger(monkeypatch, debug_log=True)

    with pl.trace_request("get_suggestions", "sess-1") as trace:
        assert pl.get_current_trace() is trace
        with pl.trace_stage("SEARCH", "two-pass search"):
            pass

    assert pl.get_current_trace() is None
    assert len(trace.stages) == 1
    assert trace.stages[0]["stage"] == "SEARCH"
    assert trace.stages[0]["success"] is True


def test_trace_stage_records_failure_and_reraises(monkeypatch):
    pl = _reload_pipeline_logger(monkeypatch, debug_log=True)

    with pytest.raises(RuntimeError):
        with pl.trace_request("complete", "sess-1") as trace:
            with pl.trace_stage("COMMIT", "list changes"):
                raise RuntimeError("boom")

    assert trace.stages[0]["success"] is False
