"""
Exception taxonomy for the Web Resource Consumption pipeline.

Every failure that can end a retrieval derives from `ConsumptionError`, so the
handler can tell pipeline failures apart from programming errors. None of these
errors roll back totals that were already aggregated; the snapshot captured at
the point of failure stays valid.
"""

from typing import Any, Optional


class ConsumptionError(Exception):
    """Base class for all retrieval and aggregation failures."""


class FetchError(ConsumptionError):
    """
    A page (or group list) request failed at the transport or service level.

    Attributes:
        cause: The underlying exception raised by the query service.
        page_number: The page being requested when the failure occurred, if known.
    """

    def __init__(self, cause: BaseException, page_number: Optional[int] = None):
        self.cause = cause
        self.page_number = page_number
        where = f"page {page_number}" if page_number is not None else "group lookup"
        super().__init__(f"Fetch failed for {where}: {type(cause).__name__}: {cause}")


class UnknownGroupError(ConsumptionError):
    """A record referenced a group key that was never loaded into the registry."""

    def __init__(self, key: Any):
        self.key = key
        super().__init__(f"Unknown group key: {key!r}")


class UnknownTypeError(ConsumptionError):
    """A record carried a web resource type code outside the fixed table."""

    def __init__(self, code: Any):
        self.code = code
        super().__init__(f"Unknown web resource type code: {code!r}")


class RetrievalCancelled(ConsumptionError):
    """The retrieval was cancelled between two page fetches."""

    def __init__(self, pages_fetched: int):
        self.pages_fetched = pages_fetched
        super().__init__(f"Retrieval cancelled after {pages_fetched} page(s).")
