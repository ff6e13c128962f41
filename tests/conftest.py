"""
Shared fixtures for the Web Resource Consumption test suite.

The handler module reads its configuration at import time, so the required
environment variables are seeded here before any test module imports it.
"""

import base64
import os
import threading
from typing import List, Optional

import pytest
from aws_lambda_powertools import Logger

os.environ.setdefault("AWS_REGION", "eu-west-1")
os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("DATAVERSE_SECRET_ID", "dataverse/test")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("USE_MOTO", "1")

from consumption_lambda.model import GroupEntry, Page, RawRecord  # noqa: E402


def b64_of_size(num_bytes: int) -> str:
    return base64.b64encode(b"\x00" * num_bytes).decode("ascii")


class StubService:
    """In-memory stand-in for the group lookup and paged query services."""

    def __init__(
        self,
        groups: List[GroupEntry],
        pages: List[Page],
        fail_on_page: Optional[int] = None,
        gate: Optional[threading.Event] = None,
    ):
        self.groups = groups
        self.pages = pages
        self.fail_on_page = fail_on_page
        self.gate = gate
        self.calls: List[tuple] = []
        self.group_calls = 0

    def list_groups(self) -> List[GroupEntry]:
        self.group_calls += 1
        return list(self.groups)

    def query_page(self, page_number: int, page_size: int, cookie: str) -> Page:
        self.calls.append((page_number, page_size, cookie))
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if page_number == self.fail_on_page:
            raise ConnectionError(f"connection reset on page {page_number}")
        return self.pages[page_number - 1]


@pytest.fixture
def logger() -> Logger:
    return Logger(service="webresource-consumption-test")


@pytest.fixture
def groups() -> List[GroupEntry]:
    return [
        GroupEntry(key="A", friendly_name="Sol A", unique_name="solA"),
        GroupEntry(key="B", friendly_name="Sol B", unique_name="solB"),
    ]


@pytest.fixture
def record():
    counter = {"n": 0}

    def _make(group_key: str, num_bytes: int, type_code: int = 3, name: Optional[str] = None) -> RawRecord:
        counter["n"] += 1
        return RawRecord(
            id=f"wr-{counter['n']}",
            name=name or f"new_/script{counter['n']}.js",
            type_code=type_code,
            group_key=group_key,
            hidden=False,
            content=b64_of_size(num_bytes) if num_bytes else "",
        )

    return _make


@pytest.fixture
def scenario_pages(record) -> List[Page]:
    """Page 1 holds two group A records (2048 + 1024 bytes); page 2 one group B record (4096 bytes)."""
    return [
        Page(records=[record("A", 2048), record("A", 1024)], more_records=True, cookie="c1", page_number=1),
        Page(records=[record("B", 4096)], more_records=False, cookie="c2", page_number=2),
    ]


@pytest.fixture
def scenario_service(groups, scenario_pages) -> StubService:
    return StubService(groups, scenario_pages)


@pytest.fixture
def stub_service_cls():
    return StubService

