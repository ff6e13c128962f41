"""
Client factories and service adapters for the Web Resource Consumption pipeline.

This module is the Dependency Injection (DI) seam of the application. The
handler receives either a real AWS Secrets Manager client or a moto-mocked one,
and either the real Dataverse adapter below or a stub service in tests. Core
logic only ever sees the two service methods `list_groups` and `query_page`.
"""

import json
import logging
import os
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import unquote

import boto3
import botocore.config
import httpx

from mypy_boto3_secretsmanager import SecretsManagerClient

from .model import GroupEntry, Page, RawRecord

logger = logging.getLogger(__name__)

# A shared, robust retry configuration for boto3 clients that need to be
# resilient to transient network or server-side errors.
BOTO_CONFIG_RETRYABLE = botocore.config.Config(
    retries={"max_attempts": 5, "mode": "adaptive"}
)

API_PATH = "/api/data/v9.2"
TOKEN_URL_TEMPLATE = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
MORE_RECORDS_ANNOTATION = "@Microsoft.Dynamics.CRM.morerecords"
PAGING_COOKIE_ANNOTATION = "@Microsoft.Dynamics.CRM.fetchxmlpagingcookie"
WEBRESOURCE_ATTRIBUTES = ("webresourceid", "name", "webresourcetype", "solutionid", "ishidden", "content")
# Refresh the bearer token this many seconds before it actually expires.
TOKEN_EXPIRY_MARGIN_SECONDS = 60


def get_boto_clients() -> SecretsManagerClient:
    """
    Returns the Secrets Manager client used to load Dataverse credentials.

    If `USE_MOTO` is set, it's assumed that `moto` is active and will intercept
    the `boto3` calls. The AWS region is read explicitly from the environment.
    """
    aws_region = os.environ.get("AWS_REGION")
    if not aws_region:
        logger.warning("AWS_REGION not set, boto3 will attempt to resolve it.")

    if os.environ.get("USE_MOTO"):
        logger.info("MOTO ENABLED: Returning mocked AWS clients.")

    secretsmanager_client: SecretsManagerClient = boto3.client(
        "secretsmanager", region_name=aws_region, config=BOTO_CONFIG_RETRYABLE
    )
    return secretsmanager_client


@dataclass(frozen=True)
class DataverseCredentials:
    """Connection settings for one Dataverse environment (app registration, client credentials flow)."""

    environment_url: str
    tenant_id: str
    client_id: str
    client_secret: str

    @property
    def scope(self) -> str:
        return f"{self.environment_url}/.default"


def load_dataverse_credentials(secrets_client: SecretsManagerClient, secret_id: str) -> DataverseCredentials:
    """
    Reads and validates the Dataverse credentials JSON stored in Secrets Manager.

    Raises:
        botocore.exceptions.ClientError: If the secret cannot be retrieved.
        ValueError: If the secret is missing a required field.
    """
    secret_value = secrets_client.get_secret_value(SecretId=secret_id)
    secret_data = json.loads(secret_value["SecretString"])

    missing = [k for k in ("environment_url", "tenant_id", "client_id", "client_secret") if not secret_data.get(k)]
    if missing:
        raise ValueError(f"Secret '{secret_id}' is missing required fields: {', '.join(missing)}")

    return DataverseCredentials(
        environment_url=secret_data["environment_url"].rstrip("/"),
        tenant_id=secret_data["tenant_id"],
        client_id=secret_data["client_id"],
        client_secret=secret_data["client_secret"],
    )


# --- FetchXML paging helpers ---


def decode_paging_cookie(annotation: str) -> str:
    """
    Extracts the paging cookie to send back from a `fetchxmlpagingcookie` annotation.

    The annotation is a `<cookie pagingcookie="..."/>` element whose attribute is
    URL-encoded twice. An empty annotation means "no cookie".
    """
    if not annotation:
        return ""
    try:
        element = ET.fromstring(annotation)
    except ET.ParseError as e:
        raise ValueError(f"Malformed paging cookie annotation: {annotation!r}") from e
    return unquote(unquote(element.get("pagingcookie", "")))


def build_fetch_xml(page_number: int, page_size: int, cookie: str = "") -> str:
    """Builds the FetchXML query for one page of web resources."""
    fetch = ET.Element(
        "fetch",
        {"version": "1.0", "mapping": "logical", "page": str(page_number), "count": str(page_size)},
    )
    paging_cookie = decode_paging_cookie(cookie)
    if paging_cookie:
        fetch.set("paging-cookie", paging_cookie)

    entity = ET.SubElement(fetch, "entity", {"name": "webresource"})
    for attribute in WEBRESOURCE_ATTRIBUTES:
        ET.SubElement(entity, "attribute", {"name": attribute})
    ET.SubElement(entity, "order", {"attribute": "webresourceid"})
    return ET.tostring(fetch, encoding="unicode")


def _to_raw_record(item: Dict[str, Any]) -> RawRecord:
    hidden = item.get("ishidden")
    # Managed properties come back as {"Value": ..., "CanBeChanged": ...}.
    if isinstance(hidden, dict):
        hidden = hidden.get("Value")
    return RawRecord(
        id=item["webresourceid"],
        name=item.get("name") or "",
        type_code=item.get("webresourcetype"),
        group_key=item.get("solutionid"),
        hidden=bool(hidden),
        content=item.get("content") or "",
    )


class DataverseClient:
    """
    Dataverse Web API adapter for the group lookup and paged resource query services.

    Authenticates with the OAuth2 client credentials flow and caches the bearer
    token until shortly before it expires. HTTP failures surface as
    `httpx.HTTPError`; the paging loop wraps them into `FetchError`.
    """

    def __init__(
        self,
        credentials: DataverseCredentials,
        timeout: float = 30.0,
        http_client: Optional[httpx.Client] = None,
    ):
        self.credentials = credentials
        self._http = http_client or httpx.Client(timeout=timeout)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def __enter__(self) -> "DataverseClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        logger.info(f"Requesting Dataverse access token for {self.credentials.environment_url}")
        resp = self._http.post(
            TOKEN_URL_TEMPLATE.format(tenant_id=self.credentials.tenant_id),
            data={
                "grant_type": "client_credentials",
                "client_id": self.credentials.client_id,
                "client_secret": self.credentials.client_secret,
                "scope": self.credentials.scope,
            },
        )
        resp.raise_for_status()
        data = resp.json()
        self._token = data["access_token"]
        self._token_expires_at = time.monotonic() + int(data.get("expires_in", 3600)) - TOKEN_EXPIRY_MARGIN_SECONDS
        return self._token

    def _get(self, url: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        if not url.startswith("http"):
            url = f"{self.credentials.environment_url}{API_PATH}{url}"
        resp = self._http.get(
            url,
            params=params,
            headers={
                "Authorization": f"Bearer {self._access_token()}",
                "Accept": "application/json",
                "OData-MaxVersion": "4.0",
                "OData-Version": "4.0",
                "Prefer": 'odata.include-annotations="*"',
            },
        )
        resp.raise_for_status()
        return resp.json()

    def list_groups(self) -> List[GroupEntry]:
        """Returns every solution in the environment, following `@odata.nextLink` if the server pages."""
        groups: List[GroupEntry] = []
        url: Optional[str] = "/solutions"
        params: Optional[Dict[str, str]] = {"$select": "solutionid,friendlyname,uniquename"}
        while url:
            data = self._get(url, params=params)
            for item in data.get("value", []):
                groups.append(
                    GroupEntry(
                        key=item["solutionid"],
                        friendly_name=item.get("friendlyname") or "",
                        unique_name=item.get("uniquename") or "",
                    )
                )
            url = data.get("@odata.nextLink")
            params = None  # nextLink already carries the query string
        return groups

    def query_page(self, page_number: int, page_size: int, cookie: str) -> Page:
        data = self._get("/webresourceset", params={"fetchXml": build_fetch_xml(page_number, page_size, cookie)})
        return Page(
            records=[_to_raw_record(item) for item in data.get("value", [])],
            more_records=bool(data.get(MORE_RECORDS_ANNOTATION, False)),
            cookie=data.get(PAGING_COOKIE_ANNOTATION) or "",
            page_number=page_number,
        )
