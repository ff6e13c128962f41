"""
Main AWS Lambda handler for the Web Resource Consumption pipeline.

This module serves as the primary entry point and orchestrator for the function.
Its responsibilities include:
  - Loading and validating configuration from environment variables.
  - Initializing and caching stateful clients (the Dataverse adapter).
  - Running the two-phase retrieval (solutions, then paged web resources) on a
    background worker thread.
  - Consuming progress and completion events from the worker.
  - Managing the overall success/failure state and emitting the final metrics.
"""

import json
import os
import queue
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from aws_lambda_powertools import Logger

from . import clients, core
from .model import RetrievalEvent

# --- 1. SETUP: Configuration, Validation, and Clients ---

def get_env_var(name: str, default: Optional[str] = None) -> str:
    """
    Gets an environment variable or raises a ValueError for fast-failure.

    Args:
        name: The name of the environment variable.
        default: An optional default value. If not provided, the variable is required.

    Returns:
        The value of the environment variable.

    Raises:
        ValueError: If the required environment variable is not set.
    """
    value = os.environ.get(name, default)
    if value is None:
        raise ValueError(f"FATAL: Environment variable '{name}' is not set.")
    return value

# --- Configuration (loaded once at cold start) ---
DATAVERSE_SECRET_ID = get_env_var("DATAVERSE_SECRET_ID")
ENVIRONMENT = get_env_var("ENVIRONMENT", "dev")
LOG_LEVEL = get_env_var("LOG_LEVEL", "INFO").upper()
PAGE_SIZE = int(get_env_var("PAGE_SIZE", str(core.DEFAULT_PAGE_SIZE)))
TOP_N = int(get_env_var("TOP_N", str(core.DEFAULT_TOP_N)))
SECRET_CACHE_TTL_SECONDS = int(get_env_var("SECRET_CACHE_TTL_SECONDS", "300"))
RETRIEVAL_TIMEOUT_SECONDS = int(get_env_var("RETRIEVAL_TIMEOUT_SECONDS", "600"))
WORKER_SHUTDOWN_GRACE_SECONDS = float(get_env_var("WORKER_SHUTDOWN_GRACE_SECONDS", "10"))
HTTP_TIMEOUT_SECONDS = float(get_env_var("HTTP_TIMEOUT_SECONDS", "30"))
METRICS_NAMESPACE = get_env_var("METRICS_NAMESPACE", core.DEFAULT_METRICS_NAMESPACE)

# --- Global Setup ---
logger = Logger(service="webresource-consumption", level=LOG_LEVEL)

SECRETS = clients.get_boto_clients()

DATAVERSE: Optional[clients.DataverseClient] = None
DATAVERSE_SECRET_CACHE = {"timestamp": datetime.min.replace(tzinfo=timezone.utc)}
# The latest retrieval worker, and replaced clients it may still be using.
RETRIEVAL_WORKER: Optional[threading.Thread] = None
RETIRED_CLIENTS: List[clients.DataverseClient] = []

# --- 2. STATEFUL & ORCHESTRATION LOGIC ---

def get_dataverse_client(force_refresh: bool = False) -> clients.DataverseClient:
    """
    Retrieves the Dataverse adapter, using a time-based cache for its credentials.

    Args:
        force_refresh: If True, bypasses the cache and reloads the credentials.
                       Used for retrying after an authentication failure.

    Returns:
        A DataverseClient for the configured environment.

    Raises:
        botocore.exceptions.ClientError: If retrieving the secret from Secrets Manager fails.
    """
    global DATAVERSE, DATAVERSE_SECRET_CACHE
    now = datetime.now(timezone.utc)
    cache_expiry = DATAVERSE_SECRET_CACHE["timestamp"] + timedelta(seconds=SECRET_CACHE_TTL_SECONDS)
    if DATAVERSE and not force_refresh and now < cache_expiry:
        return DATAVERSE

    logger.info(f"Refreshing Dataverse client credentials. Force refresh: {force_refresh}")
    credentials = clients.load_dataverse_credentials(SECRETS, DATAVERSE_SECRET_ID)
    if DATAVERSE is not None:
        _retire_client(DATAVERSE)
    DATAVERSE = clients.DataverseClient(credentials, timeout=HTTP_TIMEOUT_SECONDS)
    DATAVERSE_SECRET_CACHE = {"timestamp": now}
    return DATAVERSE

def _retire_client(client: clients.DataverseClient) -> None:
    """
    Closes a replaced Dataverse client, unless a retrieval worker may still be using it.

    A worker left running after a timeout keeps its client open. Deferred clients
    are closed on the first refresh after that worker has finished.
    """
    worker_busy = RETRIEVAL_WORKER is not None and RETRIEVAL_WORKER.is_alive()
    if not worker_busy:
        while RETIRED_CLIENTS:
            RETIRED_CLIENTS.pop().close()
        client.close()
        return
    logger.warning("Retrieval worker still running; deferring close of the previous Dataverse client.")
    RETIRED_CLIENTS.append(client)

def start_retrieval(
    service: core.RetrievalService,
    events: "queue.Queue[RetrievalEvent]",
    page_size: int = PAGE_SIZE,
    cancel_event: Optional[threading.Event] = None,
) -> threading.Thread:
    """
    Runs one retrieval on a background worker thread.

    The worker loads the solutions first, then pages through the web resources,
    feeding each page to the aggregator. It talks to the caller only through
    `events`: progress events are published with `put_nowait` and never block the
    paging loop, and exactly one "complete" event closes the run.

    The registry and result table are owned by the worker. The caller must only
    read the snapshot carried by the "complete" event. On failure the snapshot
    holds everything aggregated before the error; nothing is rolled back.

    Args:
        service: The group lookup and paged query services.
        events: The channel the worker publishes RetrievalEvents on.
        page_size: Records requested per page.
        cancel_event: Optional event; when set, the run stops before the next page.

    Returns:
        The started worker thread.
    """
    def _on_progress(requested: int):
        try:
            events.put_nowait(RetrievalEvent(kind="progress", requested=requested))
        except queue.Full:
            logger.debug(f"Progress channel full; dropping update at {requested}.")

    def _worker():
        registry = core.GroupRegistry()
        aggregator = core.Aggregator(registry)
        error: Optional[BaseException] = None
        try:
            core.load_registry(service, registry, logger)
            for page in core.fetch_pages(service, logger, page_size, _on_progress, cancel_event):
                subtotal = aggregator.consume(page)
                logger.debug(f"Aggregated page {page.page_number}: {len(page.records)} records, {subtotal} KB.")
        except Exception as e:
            logger.exception("Retrieval worker failed")
            error = e
        events.put(RetrievalEvent(kind="complete", snapshot=aggregator.snapshot(error), error=error))

    worker_thread = threading.Thread(target=_worker, name="webresource-retrieval", daemon=True)
    worker_thread.start()
    return worker_thread

def wait_for_completion(
    events: "queue.Queue[RetrievalEvent]",
    timeout: float = RETRIEVAL_TIMEOUT_SECONDS,
    cancel_event: Optional[threading.Event] = None,
) -> RetrievalEvent:
    """
    Consumes the worker's events until the "complete" event arrives.

    Raises:
        TimeoutError: If the run does not complete within `timeout` seconds. The
                      cancel event, if given, is set so the worker stops at the
                      next page boundary.
    """
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            if cancel_event is not None:
                cancel_event.set()
            raise TimeoutError(f"Retrieval did not complete within {timeout} seconds.")
        try:
            event = events.get(timeout=remaining)
        except queue.Empty:
            continue
        if event.kind == "progress":
            logger.info(f"Web resources requested so far: {event.requested}")
            continue
        return event

def collect_cancelled_run(
    worker: threading.Thread,
    events: "queue.Queue[RetrievalEvent]",
    grace: float = WORKER_SHUTDOWN_GRACE_SECONDS,
) -> Optional[RetrievalEvent]:
    """
    Waits up to `grace` seconds for a cancelled worker and returns its "complete" event.

    Returns None if the worker is still blocked inside a page request when the
    grace period ends.
    """
    worker.join(timeout=grace)
    while True:
        try:
            event = events.get_nowait()
        except queue.Empty:
            return None
        if event.kind == "complete":
            return event

def _log_partial_results(completion: RetrievalEvent) -> None:
    snapshot = completion.snapshot
    logger.warning(
        "Retrieval ended early; partial results are kept.",
        extra={"partial_resources": len(snapshot.rows), "partial_total_kb": snapshot.grand_total_kb},
    )

def _build_response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    """Centralized helper to build the final Lambda response."""
    return {"statusCode": status_code, "body": json.dumps(body)}

# --- 3. LAMBDA HANDLER ---

def handler(event: Dict, context: Any):
    """
    Main Lambda entry point. Orchestrates one web resource consumption run.

    The event may override `page_size` and `top_n`. The function returns a
    dictionary for logging and unit testing convenience, and re-raises failures
    so the invoker sees them.

    This function follows these steps:
    1. Gets the (cached) Dataverse adapter.
    2. Starts the retrieval worker and consumes its progress events.
    3. On completion, ranks the solutions and builds the summary.
    4. Emits success or failure metrics. On failure, the partial totals
       aggregated so far are logged with the error.
    """
    global RETRIEVAL_WORKER
    start_time = datetime.now(timezone.utc)
    event = event or {}
    page_size = int(event.get("page_size", PAGE_SIZE))
    top_n = int(event.get("top_n", TOP_N))

    try:
        service = get_dataverse_client()
        events: "queue.Queue[RetrievalEvent]" = queue.Queue()
        cancel_event = threading.Event()

        worker = start_retrieval(service, events, page_size, cancel_event)
        RETRIEVAL_WORKER = worker
        try:
            completion = wait_for_completion(events, RETRIEVAL_TIMEOUT_SECONDS, cancel_event)
        except TimeoutError:
            cancelled = collect_cancelled_run(worker, events, WORKER_SHUTDOWN_GRACE_SECONDS)
            if cancelled is None:
                logger.warning("Retrieval worker still running after cancellation; no partial results.")
            else:
                _log_partial_results(cancelled)
            raise
        snapshot = completion.snapshot

        if completion.error is not None:
            _log_partial_results(completion)
            raise completion.error

        summary = core.summarize(snapshot, top_n)
        latency_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        log_payload = {**summary, "solutions": len(snapshot.group_totals), "latency_ms": latency_ms}

        core.emit_metrics(ENVIRONMENT, "Success", log_payload, METRICS_NAMESPACE)
        logger.info(summary["message"])
        return _build_response(200, log_payload)

    except Exception as e:
        latency_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        error_payload = {"error_type": type(e).__name__, "error_message": str(e), "latency_ms": latency_ms}
        core.emit_metrics(ENVIRONMENT, "Failure", error_payload, METRICS_NAMESPACE)
        logger.error(f"Processing failed: {json.dumps(error_payload)}", exc_info=True)
        raise
