"""
Apollo Open API client.

Covers the three calls the agent needs against one app's
``default/application`` namespace:

- GET  ``.../items/{key}``                         read the managed value
- PUT  ``.../items/{key}?createIfNotExists=true``  upsert the managed value
- POST ``.../releases``                            publish the namespace

Every request carries the open API token in ``Authorization`` and a JSON
content type, and is bounded by a fixed timeout.  Response bodies are read in
full before the status is inspected so error bodies can be logged.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import AgentConfig
from .config_env import (
    AUTH_HEADER,
    CONTENT_TYPE_HEADER,
    CONTENT_TYPE_JSON,
    HTTP_TIMEOUT_S,
    RELEASE_SUFFIX,
)

logger = logging.getLogger(__name__)

_RELEASE_TITLE_FORMAT = "%Y%m%d%H%M%S"


class RemoteConfigError(RuntimeError):
    pass


class RemoteConfigTransportError(RemoteConfigError):
    """The request never produced an HTTP response (DNS, connect, timeout)."""


class RemoteConfigHTTPError(RemoteConfigError):
    """The authority answered with a non-2xx status."""

    def __init__(self, method: str, url: str, status_code: int, body: str) -> None:
        super().__init__(f"{method} {url} returned HTTP {status_code}: {body}")
        self.method = method
        self.url = url
        self.status_code = status_code
        self.body = body


class RemoteConfigDecodeError(RemoteConfigError):
    """A response body could not be parsed into a config item."""

    def __init__(self, message: str, body: str) -> None:
        super().__init__(message)
        self.body = body


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------

class RemoteConfigRecord(BaseModel):
    """One namespace item as exchanged with the open API."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    key: str = ""
    value: str = ""
    comment: Optional[str] = None
    data_change_created_by: Optional[str] = Field(default=None, alias="dataChangeCreatedBy")
    data_change_last_modified_by: Optional[str] = Field(
        default=None, alias="dataChangeLastModifiedBy"
    )
    data_change_created_time: Optional[str] = Field(default=None, alias="dataChangeCreatedTime")
    data_change_last_modified_time: Optional[str] = Field(
        default=None, alias="dataChangeLastModifiedTime"
    )

    @field_validator("key", "value", mode="before")
    @classmethod
    def _null_as_empty(cls, v):
        return "" if v is None else v

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ReleaseRecord(BaseModel):
    """Body of a namespace release (publish) request."""

    model_config = ConfigDict(populate_by_name=True)

    release_title: str = Field(alias="releaseTitle")
    released_by: str = Field(alias="releasedBy")

    @classmethod
    def for_author(cls, author: str, now: Optional[datetime] = None) -> "ReleaseRecord":
        stamp = (now or datetime.now()).strftime(_RELEASE_TITLE_FORMAT)
        return cls(release_title=f"{stamp}{RELEASE_SUFFIX}", released_by=author)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


def decode_record(body: str) -> RemoteConfigRecord:
    """Parse a GET item response body."""
    try:
        return RemoteConfigRecord.model_validate_json(body)
    except ValidationError as exc:
        raise RemoteConfigDecodeError(f"Malformed config item payload: {exc}", body) from exc


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class ApolloOpenApiClient:
    """Authenticated client for one app/env namespace of the Apollo portal."""

    def __init__(
        self,
        config: AgentConfig,
        *,
        session: Optional[requests.Session] = None,
        timeout_s: float = HTTP_TIMEOUT_S,
    ) -> None:
        self._namespace_url = config.namespace_url
        self._timeout_s = timeout_s
        self._session = session if session is not None else requests.Session()
        self._session.headers.update({
            AUTH_HEADER: config.token,
            CONTENT_TYPE_HEADER: CONTENT_TYPE_JSON,
        })

    def __enter__(self) -> "ApolloOpenApiClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._session.close()

    def item_url(self, key: str) -> str:
        return f"{self._namespace_url}/items/{key}"

    @property
    def releases_url(self) -> str:
        return f"{self._namespace_url}/releases"

    def _request(
        self,
        method: str,
        url: str,
        *,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> str:
        data = None
        if payload is not None:
            try:
                data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
            except (TypeError, ValueError) as exc:
                raise RemoteConfigError(f"Cannot serialize {method} body for {url}: {exc}") from exc

        logger.debug("%s %s", method, url)
        try:
            resp = self._session.request(
                method,
                url,
                data=data,
                params=params,
                timeout=self._timeout_s,
            )
        except requests.RequestException as exc:
            raise RemoteConfigTransportError(f"{method} {url} failed: {exc}") from exc

        body = resp.content.decode("utf-8", errors="replace")
        if not 200 <= resp.status_code < 300:
            raise RemoteConfigHTTPError(method, url, resp.status_code, body)
        return body

    def fetch_item(self, key: str) -> str:
        """Return the raw response body of the item *key*."""
        return self._request("GET", self.item_url(key))

    def upsert_item(self, record: RemoteConfigRecord) -> None:
        """Create or update the item, creating it when it does not exist."""
        self._request(
            "PUT",
            self.item_url(record.key),
            payload=record.to_payload(),
            params={"createIfNotExists": "true"},
        )

    def publish_release(self, release: ReleaseRecord) -> None:
        self._request("POST", self.releases_url, payload=release.to_payload())
