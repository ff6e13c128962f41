"""
Data models for the Web Resource Consumption pipeline.

This module defines the structures passed between the query service, the
paging loop, the aggregator and the handler. Dataclasses and TypedDicts keep
the data contracts explicit and statically checked by mypy.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List, Optional, Tuple, TypedDict


class WebResourceType(IntEnum):
    """The closed set of web resource type codes and their display labels."""

    WEBPAGE = 1
    STYLESHEET_CSS = 2
    SCRIPT = 3
    DATA_XML = 4
    PNG = 5
    JPG = 6
    GIF = 7
    SILVERLIGHT = 8
    STYLESHEET_XSL = 9
    ICO = 10
    VECTOR_SVG = 11
    STRING_RESX = 12

    @property
    def label(self) -> str:
        return _TYPE_LABELS[self]


_TYPE_LABELS: Dict[WebResourceType, str] = {
    WebResourceType.WEBPAGE: "Webpage (HTML)",
    WebResourceType.STYLESHEET_CSS: "Style Sheet (CSS)",
    WebResourceType.SCRIPT: "Script (JScript)",
    WebResourceType.DATA_XML: "Data (XML)",
    WebResourceType.PNG: "PNG format",
    WebResourceType.JPG: "JPG format",
    WebResourceType.GIF: "GIF format",
    WebResourceType.SILVERLIGHT: "Silverlight (XAP)",
    WebResourceType.STYLESHEET_XSL: "Style Sheet (XSL)",
    WebResourceType.ICO: "ICO format",
    WebResourceType.VECTOR_SVG: "Vector format (SVG)",
    WebResourceType.STRING_RESX: "String (RESX)",
}


class GroupEntry(TypedDict):
    """One solution as returned by the group lookup service."""

    key: str
    friendly_name: str
    unique_name: str


@dataclass(frozen=True)
class RawRecord:
    """A single web resource exactly as the paged query service returns it."""

    id: str
    name: str
    type_code: int
    group_key: str
    hidden: bool
    content: Optional[str] = None


@dataclass(frozen=True)
class Page:
    """
    One bounded batch of records plus the continuation state for the next one.

    Attributes:
        records: The records in retrieval order.
        more_records: True if the service holds further pages.
        cookie: The opaque paging cookie to send with the next request.
        page_number: The page number this batch was requested as.
    """

    records: List[RawRecord]
    more_records: bool
    cookie: str = ""
    page_number: int = 1


@dataclass(frozen=True)
class PagingCursor:
    """Request state for the next page. Page N+1 always carries page N's cookie."""

    page_number: int = 1
    cookie: str = ""

    def advance(self, cookie: str) -> "PagingCursor":
        return PagingCursor(page_number=self.page_number + 1, cookie=cookie)


@dataclass(frozen=True)
class ResourceRow:
    """A normalized row of the result table. Sizes are whole kilobytes."""

    id: str
    name: str
    type_label: str
    group_key: str
    group_label: str
    hidden: bool
    size_kb: int


@dataclass
class AggregateSnapshot:
    """
    The result of one retrieval run, complete or partial.

    Attributes:
        rows: All rows in retrieval order.
        group_totals: Kilobytes per group key, including groups with no rows.
        group_names: Display name per group key.
        grand_total_kb: Sum of every row's size.
        complete: False when the run ended on an error or cancellation.
        error: The error that ended the run, if any.
    """

    rows: List[ResourceRow] = field(default_factory=list)
    group_totals: Dict[str, int] = field(default_factory=dict)
    group_names: Dict[str, str] = field(default_factory=dict)
    grand_total_kb: int = 0
    complete: bool = True
    error: Optional[BaseException] = None

    @property
    def total_megabytes(self) -> int:
        return self.grand_total_kb // 1024

    def rows_for_group(self, group_key: str) -> List[ResourceRow]:
        return [row for row in self.rows if row.group_key == group_key]

    def sorted_rows(self) -> List[ResourceRow]:
        """Rows ordered by size, largest first. The table itself is not reordered."""
        return sorted(self.rows, key=lambda row: row.size_kb, reverse=True)


@dataclass(frozen=True)
class RetrievalEvent:
    """
    A message on the channel between the retrieval worker and its caller.

    A run publishes any number of "progress" events followed by exactly one
    "complete" event carrying the snapshot and, if the run failed, the error.
    """

    kind: str
    requested: int = 0
    snapshot: Optional[AggregateSnapshot] = None
    error: Optional[BaseException] = None


RankedGroup = Tuple[str, int]
