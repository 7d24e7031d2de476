import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Any, List, Optional, Sequence

import httpx
from pydantic import BaseModel, ConfigDict, Field

from schoolsync.config import settings
from schoolsync.exceptions import ConnectorError

log = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class SystemConfig(BaseModel):
    """One external system to sync, resolved fresh for every run."""
    model_config = ConfigDict(frozen=True)

    config_id: int = Field(..., description="Stable id of the stored school config")
    source: str = Field(..., description="Source tag ('mb' or 'nex')")
    school_id: str = Field(..., description="External school identifier")
    school_name: str = Field(..., description="Display name")
    base_url: Optional[str] = Field(None, description="ManageBac base URL or Nexquare domain URL")
    credentials: Dict[str, Any] = Field(default_factory=dict, description="Decrypted credential payload")
    settings: Dict[str, Any] = Field(default_factory=dict, description="Connector-specific settings")


@dataclass
class SyncContext:
    """Run-wide parameters handed to every endpoint step."""
    academic_year: str
    start_date: str
    end_date: str
    record_store: Any


class BaseConnector(ABC):
    """Abstract Base Class for the student-information API connectors."""

    source: str = ""
    endpoints: Sequence[str] = ()

    def __init__(self, config: Optional[Dict[str, Any]] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or {}
        self.retry_attempts = max(1, int(self.config.get("retry_attempts", settings.http_retry_attempts)))
        self.retry_backoff = float(self.config.get("retry_backoff", 1.0))
        self.client = httpx.AsyncClient(
            timeout=self.config.get("timeout", settings.http_timeout_seconds),
            transport=transport,
        )

    @abstractmethod
    async def run_endpoint(self, system: SystemConfig, endpoint: str, context: SyncContext) -> int:
        """Pulls one endpoint for one system and upserts it. Returns the record count."""
        pass

    @abstractmethod
    async def validate_connection(self, system: SystemConfig) -> bool:
        """Validates the credentials of one system."""
        pass

    async def aclose(self) -> None:
        await self.client.aclose()

    def _check_endpoint(self, endpoint: str) -> None:
        if endpoint not in self.endpoints:
            raise ConnectorError(f"Unknown {self.source} endpoint '{endpoint}'", source=self.source, endpoint=endpoint)

    async def _send(self, method: str, url: str, endpoint: Optional[str] = None, **kwargs) -> httpx.Response:
        """Sends a request, retrying network errors and 429/5xx responses."""
        last_error = "no attempt made"
        for attempt in range(1, self.retry_attempts + 1):
            try:
                log.trace(f"{self.source} API {method} {url} params={kwargs.get('params', 'none')} (attempt {attempt})")
                response = await self.client.request(method, url, **kwargs)
            except httpx.RequestError as e:
                last_error = f"Request error for {url}: {e}"
                log.warning(last_error)
            else:
                log.trace(f"{self.source} API response for {url}: {response.status_code}")
                if response.status_code not in RETRYABLE_STATUS_CODES or attempt == self.retry_attempts:
                    return response
                last_error = f"HTTP {response.status_code} from {url}"
                log.warning(f"{last_error}, retrying")
            if attempt < self.retry_attempts:
                await asyncio.sleep(self.retry_backoff * attempt)
        raise ConnectorError(last_error, source=self.source, endpoint=endpoint)

    def _json(self, response: httpx.Response, endpoint: Optional[str] = None) -> Any:
        """Raises ConnectorError for HTTP errors and non-JSON bodies."""
        if response.status_code >= 400:
            raise ConnectorError(
                f"HTTP {response.status_code}: {response.reason_phrase}. Response: {response.text[:200]}",
                source=self.source,
                endpoint=endpoint,
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise ConnectorError(f"Malformed response from {response.request.url}: {e}",
                                 source=self.source, endpoint=endpoint) from e


def extract_items(payload: Any, data_keys: Sequence[str]) -> List[Dict[str, Any]]:
    """Pulls the record list out of an API payload.

    Accepts a bare list, a ``{"data": ...}`` envelope, or a dict keyed by one
    of ``data_keys``; a single object under the key is wrapped in a list.
    """
    raw = payload.get("data", payload) if isinstance(payload, dict) else payload
    if isinstance(raw, list):
        return raw
    if not isinstance(raw, dict):
        raise ConnectorError(f"Unexpected payload type {type(raw).__name__}")
    for key in data_keys:
        items = raw.get(key)
        if isinstance(items, list):
            return items
        if isinstance(items, dict):
            return [items]
    return []
