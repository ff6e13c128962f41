import json
import queue
import threading

import boto3
import pytest
from moto import mock_aws

from consumption_lambda import app, clients
from consumption_lambda.errors import FetchError, RetrievalCancelled, UnknownGroupError
from consumption_lambda.model import Page


def _drain(events):
    collected = []
    while True:
        try:
            collected.append(events.get(timeout=5))
        except queue.Empty:
            return collected
        if collected[-1].kind == "complete":
            return collected


def test_worker_publishes_progress_then_completion(scenario_service):
    events = queue.Queue()

    worker = app.start_retrieval(scenario_service, events, page_size=200)
    received = _drain(events)
    worker.join(timeout=5)

    assert [e.kind for e in received] == ["progress", "complete"]
    assert received[0].requested == 200
    snapshot = received[-1].snapshot
    assert received[-1].error is None
    assert snapshot.complete is True
    assert snapshot.group_totals == {"A": 3, "B": 4}
    assert snapshot.grand_total_kb == 7
    assert scenario_service.group_calls == 1
    assert scenario_service.calls == [(1, 200, ""), (2, 200, "c1")]


def test_worker_keeps_partial_results_on_unknown_group(groups, record, stub_service_cls):
    pages = [
        Page(records=[record("A", 2048)], more_records=True, cookie="c1"),
        Page(records=[record("B", 1024), record("Z", 1024)], more_records=False),
    ]
    events = queue.Queue()

    app.start_retrieval(stub_service_cls(groups, pages), events)
    completion = _drain(events)[-1]

    assert isinstance(completion.error, UnknownGroupError)
    assert completion.snapshot.complete is False
    assert completion.snapshot.group_totals == {"A": 2, "B": 1}
    assert len(completion.snapshot.rows) == 2


def test_wait_for_completion_times_out_and_cancels(groups, record, stub_service_cls):
    gate = threading.Event()
    pages = [
        Page(records=[record("A", 1024)], more_records=True, cookie="c1"),
        Page(records=[record("A", 1024)], more_records=False),
    ]
    service = stub_service_cls(groups, pages, gate=gate)
    events = queue.Queue()
    cancel_event = threading.Event()

    app.start_retrieval(service, events, cancel_event=cancel_event)
    with pytest.raises(TimeoutError):
        app.wait_for_completion(events, timeout=0.2, cancel_event=cancel_event)
    assert cancel_event.is_set()

    gate.set()
    completion = _drain(events)[-1]
    assert isinstance(completion.error, RetrievalCancelled)
    assert completion.snapshot.grand_total_kb == 1
    assert len(service.calls) == 1


def test_handler_returns_summary(monkeypatch, scenario_service):
    monkeypatch.setattr(app, "get_dataverse_client", lambda force_refresh=False: scenario_service)

    response = app.handler({"top_n": 1}, None)

    assert response["statusCode"] == 200
    body = json.loads(response["body"])
    assert body["resources_found"] == 3
    assert body["total_kb"] == 7
    assert body["solutions"] == 2
    assert body["ranked_solution_ids"] == ["B", "A"]
    assert body["largest_solutions_mb"] == [{"solution_id": "B", "solution": "Sol B (solB)", "size_mb": 0}]


def test_handler_honors_page_size_override(monkeypatch, scenario_service):
    monkeypatch.setattr(app, "get_dataverse_client", lambda force_refresh=False: scenario_service)

    app.handler({"page_size": 25}, None)

    assert [call[1] for call in scenario_service.calls] == [25, 25]


def test_handler_reraises_fetch_errors(monkeypatch, groups, scenario_pages, stub_service_cls):
    service = stub_service_cls(groups, scenario_pages, fail_on_page=2)
    monkeypatch.setattr(app, "get_dataverse_client", lambda force_refresh=False: service)

    with pytest.raises(FetchError) as exc_info:
        app.handler({}, None)

    assert exc_info.value.page_number == 2


def test_get_dataverse_client_caches_credentials(monkeypatch):
    with mock_aws():
        monkeypatch.setattr(app, "SECRETS", _create_dataverse_secret())
        monkeypatch.setattr(app, "DATAVERSE", None)

        first = app.get_dataverse_client()
        again = app.get_dataverse_client()
        refreshed = app.get_dataverse_client(force_refresh=True)

    assert isinstance(first, clients.DataverseClient)
    assert first is again
    assert refreshed is not first
    assert refreshed.credentials.environment_url == "https://contoso.crm4.dynamics.com"
    refreshed.close()


def _create_dataverse_secret():
    secrets = boto3.client("secretsmanager", region_name="eu-west-1")
    secrets.create_secret(
        Name=app.DATAVERSE_SECRET_ID,
        SecretString=json.dumps(
            {
                "environment_url": "https://contoso.crm4.dynamics.com",
                "tenant_id": "tenant-1",
                "client_id": "app-1",
                "client_secret": "s3cret",
            }
        ),
    )
    return secrets


class _TrackedClient:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


def test_replaced_client_stays_open_while_worker_runs(monkeypatch):
    release = threading.Event()
    busy_worker = threading.Thread(target=release.wait, kwargs={"timeout": 5}, daemon=True)
    busy_worker.start()
    old_client = _TrackedClient()

    with mock_aws():
        monkeypatch.setattr(app, "SECRETS", _create_dataverse_secret())
        monkeypatch.setattr(app, "DATAVERSE", old_client)
        monkeypatch.setattr(app, "RETRIEVAL_WORKER", busy_worker)
        monkeypatch.setattr(app, "RETIRED_CLIENTS", [])

        replacement = app.get_dataverse_client(force_refresh=True)
        assert replacement is not old_client
        assert old_client.closed is False
        assert app.RETIRED_CLIENTS == [old_client]

        release.set()
        busy_worker.join(timeout=5)
        latest = app.get_dataverse_client(force_refresh=True)

    assert old_client.closed is True
    assert app.RETIRED_CLIENTS == []
    latest.close()


def test_handler_timeout_logs_partial_results(monkeypatch, groups, record, stub_service_cls):
    gate = threading.Event()
    pages = [
        Page(records=[record("A", 1024)], more_records=True, cookie="c1"),
        Page(records=[record("B", 1024)], more_records=False),
    ]
    service = stub_service_cls(groups, pages, gate=gate)
    monkeypatch.setattr(app, "get_dataverse_client", lambda force_refresh=False: service)
    monkeypatch.setattr(app, "RETRIEVAL_TIMEOUT_SECONDS", 0.2)
    monkeypatch.setattr(app, "WORKER_SHUTDOWN_GRACE_SECONDS", 5)
    monkeypatch.setattr(app, "RETRIEVAL_WORKER", None)
    warnings = []
    monkeypatch.setattr(app.logger, "warning", lambda msg, *args, **kwargs: warnings.append(kwargs.get("extra") or {}))
    opener = threading.Timer(0.5, gate.set)
    opener.start()

    with pytest.raises(TimeoutError):
        app.handler({}, None)
    opener.join()

    assert not app.RETRIEVAL_WORKER.is_alive()
    assert len(service.calls) == 1
    partial = [extra for extra in warnings if "partial_total_kb" in extra]
    assert len(partial) == 1
    assert partial[0]["partial_total_kb"] == 1
    assert partial[0]["partial_resources"] == 1
