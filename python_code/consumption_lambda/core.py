"""
Core business logic for the Web Resource Consumption pipeline.

These functions and classes are designed to be "pure" and testable: they make
no HTTP or AWS calls of their own and hold no global state. The query service
and the Powertools logger are passed in by the handler in app.py, so every
piece here can be unit-tested with a stub service.
"""

import threading
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Protocol

from aws_lambda_powertools import Logger
from aws_lambda_powertools.metrics import MetricUnit, single_metric

from .errors import FetchError, RetrievalCancelled, UnknownGroupError, UnknownTypeError
from .model import (
    AggregateSnapshot,
    GroupEntry,
    Page,
    PagingCursor,
    RankedGroup,
    ResourceRow,
    WebResourceType,
)

DEFAULT_PAGE_SIZE = 200
DEFAULT_TOP_N = 5
DEFAULT_METRICS_NAMESPACE = "WebResourceConsumption"


class GroupLookupService(Protocol):
    def list_groups(self) -> Iterable[GroupEntry]: ...


class PagedQueryService(Protocol):
    def query_page(self, page_number: int, page_size: int, cookie: str) -> Page: ...


class RetrievalService(GroupLookupService, PagedQueryService, Protocol):
    """Both services of one retrieval, as one Dataverse connection provides them."""


# --- Size and type helpers ---


def estimate_base64_size(value: Optional[str]) -> int:
    """
    Returns the decoded byte length of a base64 payload without decoding it.

    Only the length and the `=` padding in the last two characters are used;
    the character set is not validated. Payloads too short to hold their own
    padding (such as "=" or "A=") count as 0 bytes, never less.
    """
    if not value:
        return 0
    padding = value[-2:].count("=")
    return max(3 * (len(value) // 4) - padding, 0)


def resolve_type_label(code: Any) -> str:
    """Maps a web resource type code to its label, raising UnknownTypeError for anything else."""
    if isinstance(code, bool) or not isinstance(code, int):
        raise UnknownTypeError(code)
    try:
        return WebResourceType(code).label
    except ValueError:
        raise UnknownTypeError(code) from None


# --- Group Registry ---


class GroupRegistry:
    """Known solutions, their display names, and their running size totals in KB."""

    def __init__(self) -> None:
        self._names: Dict[str, str] = {}
        self._totals: Dict[str, int] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._names

    def __len__(self) -> int:
        return len(self._names)

    @property
    def names(self) -> Dict[str, str]:
        return dict(self._names)

    @property
    def totals(self) -> Dict[str, int]:
        return dict(self._totals)

    def load_groups(self, entries: Iterable[GroupEntry]) -> Dict[str, str]:
        for entry in entries:
            self._names[entry["key"]] = f"{entry['friendly_name']} ({entry['unique_name']})"
        return self.names

    def init_totals(self) -> None:
        for key in self._names:
            self._totals[key] = 0

    def lookup(self, key: str) -> str:
        try:
            return self._names[key]
        except KeyError:
            raise UnknownGroupError(key) from None

    def add_to_total(self, key: str, kilobytes: int) -> None:
        if key not in self._names:
            raise UnknownGroupError(key)
        if kilobytes < 0:
            raise ValueError(f"Group totals cannot decrease (got {kilobytes} KB for {key}).")
        self._totals[key] = self._totals.get(key, 0) + kilobytes


def load_registry(service: GroupLookupService, registry: GroupRegistry, logger: Logger) -> Dict[str, str]:
    """
    Runs the single, non-paged group lookup and seeds every group with a zero total.

    This must complete before any page is fetched: the aggregator resolves every
    record's group against the registry populated here.

    Raises:
        FetchError: If the group lookup service fails.
    """
    try:
        entries = list(service.list_groups())
    except Exception as e:
        logger.exception("Group lookup failed.")
        raise FetchError(e) from e

    names = registry.load_groups(entries)
    registry.init_totals()
    logger.info(f"Loaded {len(names)} solutions.")
    return names


# --- Paged Fetcher ---


def _report_progress(on_progress: Optional[Callable[[int], None]], requested: int, logger: Logger) -> None:
    if on_progress is None:
        return
    try:
        on_progress(requested)
    except Exception:
        logger.warning("Progress sink raised; ignoring.", extra={"requested": requested}, exc_info=True)


def fetch_pages(
    service: PagedQueryService,
    logger: Logger,
    page_size: int = DEFAULT_PAGE_SIZE,
    on_progress: Optional[Callable[[int], None]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Iterator[Page]:
    """
    Pages through the query service, yielding one page at a time until exhaustion.

    Requests are strictly sequential: page N+1 is only requested after page N has
    been yielded and consumed, and it carries page N's cookie verbatim. The only
    normal termination is a page whose `more_records` flag is false.

    After each page that has a successor, `on_progress` receives the cumulative
    number of records requested so far (page_number * page_size). A failing
    progress sink is logged and ignored.

    Args:
        service: The paged resource query service.
        logger: The Powertools Logger instance for structured logging.
        page_size: Records requested per page.
        on_progress: Optional progress sink.
        cancel_event: Optional event checked between page fetches.

    Yields:
        Each Page in retrieval order.

    Raises:
        FetchError: If the service fails on any page. Pages already yielded stay valid.
        RetrievalCancelled: If `cancel_event` is set before the next page is requested.
    """
    if page_size < 1:
        raise ValueError(f"page_size must be positive, got {page_size}.")

    cursor = PagingCursor()
    while True:
        try:
            page = service.query_page(cursor.page_number, page_size, cursor.cookie)
        except Exception as e:
            logger.exception("Page fetch failed.", extra={"page_number": cursor.page_number})
            raise FetchError(e, cursor.page_number) from e

        logger.debug(
            "Fetched page.",
            extra={"page_number": cursor.page_number, "records": len(page.records), "more_records": page.more_records},
        )
        yield page

        if not page.more_records:
            return

        _report_progress(on_progress, cursor.page_number * page_size, logger)
        cursor = cursor.advance(page.cookie)

        if cancel_event is not None and cancel_event.is_set():
            logger.warning(f"Retrieval cancelled before page {cursor.page_number}.")
            raise RetrievalCancelled(cursor.page_number - 1)


# --- Aggregator ---


class Aggregator:
    """
    Turns pages of raw records into result rows and running totals.

    The result table is append-only in retrieval order. After every record, the
    grand total equals the sum of the group totals, which equals the sum of the
    row sizes. A record that fails type or group resolution changes nothing.
    """

    def __init__(self, registry: GroupRegistry) -> None:
        self._registry = registry
        self._rows: List[ResourceRow] = []
        self._grand_total_kb = 0

    @property
    def rows(self) -> List[ResourceRow]:
        return list(self._rows)

    @property
    def grand_total_kb(self) -> int:
        return self._grand_total_kb

    def consume(self, page: Page) -> int:
        """Processes every record in the page, in order, and returns the page's subtotal in KB."""
        subtotal = 0
        for record in page.records:
            type_label = resolve_type_label(record.type_code)
            group_label = self._registry.lookup(record.group_key)
            size_kb = estimate_base64_size(record.content) // 1024

            self._registry.add_to_total(record.group_key, size_kb)
            self._rows.append(
                ResourceRow(
                    id=record.id,
                    name=record.name,
                    type_label=type_label,
                    group_key=record.group_key,
                    group_label=group_label,
                    hidden=record.hidden,
                    size_kb=size_kb,
                )
            )
            self._grand_total_kb += size_kb
            subtotal += size_kb
        return subtotal

    def snapshot(self, error: Optional[BaseException] = None) -> AggregateSnapshot:
        return AggregateSnapshot(
            rows=list(self._rows),
            group_totals=self._registry.totals,
            group_names=self._registry.names,
            grand_total_kb=self._grand_total_kb,
            complete=error is None,
            error=error,
        )


# --- Ranking View ---


class RankingView:
    """Groups ordered by total size, largest first; equal totals are ordered by group key."""

    def __init__(self, totals: Mapping[str, int]) -> None:
        self._ranked: List[RankedGroup] = sorted(totals.items(), key=lambda item: (-item[1], item[0]))

    def rank(self) -> List[RankedGroup]:
        return list(self._ranked)

    def top(self, n: int = DEFAULT_TOP_N) -> List[RankedGroup]:
        """The first `n` groups with their totals converted to whole megabytes."""
        return [(key, total_kb // 1024) for key, total_kb in self._ranked[:n]]

    @property
    def ordered_keys(self) -> List[str]:
        return [key for key, _ in self._ranked]

    def key_at(self, position: int) -> str:
        return self._ranked[position][0]


def summarize(snapshot: AggregateSnapshot, top_n: int = DEFAULT_TOP_N) -> Dict[str, Any]:
    """Builds the summary payload reported for a snapshot: counts, sizes and the largest solutions."""
    ranking = RankingView(snapshot.group_totals)
    return {
        "message": f"Total webresources found: {len(snapshot.rows)} ({snapshot.total_megabytes}MB)",
        "resources_found": len(snapshot.rows),
        "total_kb": snapshot.grand_total_kb,
        "total_mb": snapshot.total_megabytes,
        "largest_solutions_mb": [
            {"solution_id": key, "solution": snapshot.group_names.get(key, key), "size_mb": size_mb}
            for key, size_mb in ranking.top(top_n)
        ],
        "ranked_solution_ids": ranking.ordered_keys,
    }


# --- Metrics ---


def emit_metrics(
    environment: str,
    status: str,
    payload: Dict[str, Any],
    namespace: str = DEFAULT_METRICS_NAMESPACE,
) -> None:
    """
    Publishes every numeric value in `payload` as a CloudWatch EMF metric.

    Non-numeric values (keys, messages, lists) are skipped. Each metric carries
    the environment and status as dimensions.
    """
    for name, value in payload.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        if name.endswith("_ms"):
            unit = MetricUnit.Milliseconds
        elif name.endswith("_kb"):
            unit = MetricUnit.Kilobytes
        elif name.endswith("_mb"):
            unit = MetricUnit.Megabytes
        else:
            unit = MetricUnit.Count
        with single_metric(name=name, unit=unit, value=value, namespace=namespace) as metric:
            metric.add_dimension(name="environment", value=environment)
            metric.add_dimension(name="status", value=status)
