import logging
import time
from typing import Dict, Any, List, Optional, Tuple

from schoolsync.connectors.base import BaseConnector, SystemConfig, SyncContext, extract_items
from schoolsync.constants.sync_status import SchoolSource
from schoolsync.exceptions import ConnectorError

log = logging.getLogger(__name__)

TOKEN_PATH = "/oauth2/v1/token"
TOKEN_EXPIRY_BUFFER = 300  # refresh five minutes early
DEFAULT_TOKEN_TTL = 86400
PAGE_LIMIT = 1000

ONEROSTER = "/ims/oneroster/v1p1"

# endpoint name -> (path template, payload keys, page limit or None for single request)
NEXQUARE_ENDPOINTS: Dict[str, Tuple[str, Tuple[str, ...], Optional[int]]] = {
    "schools": ("/nexquare" + ONEROSTER + "/schools", ("orgs", "schools"), 100),
    "students": (ONEROSTER + "/schools/{school_id}/students/", ("users", "students"), 100),
    "staff": (ONEROSTER + "/schools/{school_id}/teachers", ("users", "teachers"), 100),
    "classes": (ONEROSTER + "/schools/{school_id}/classes/", ("classes",), 100),
    "allocation-master": (ONEROSTER + "/allocationMaster/{school_id}", ("allocationMaster", "allocations"), 1000),
    "student-allocations": (ONEROSTER + "/schools/{school_id}/studentsAllocation", ("studentsAllocation", "allocations"), 1000),
    "staff-allocations": (ONEROSTER + "/schools/{school_id}/staffAllocation", ("staffAllocation", "allocations"), 1000),
    "daily-plans": (ONEROSTER + "/dailyPlan", ("dailyPlan", "dailyPlans"), None),
    "daily-attendance": (ONEROSTER + "/getDailyAttendance", ("attendance", "dailyAttendance"), PAGE_LIMIT),
    "student-assessments": (ONEROSTER + "/assessment/students", ("assessments", "students"), PAGE_LIMIT),
}


class NexquareConnector(BaseConnector):
    """
    Connector for the Nexquare OneRoster API.

    Holds no per-school state: tokens are cached per config id and every
    call takes the school id explicitly, so one instance can serve many
    schools concurrently.
    """

    source = SchoolSource.NEXQUARE.value
    endpoints = tuple(NEXQUARE_ENDPOINTS)

    def __init__(self, config: Optional[Dict[str, Any]] = None, transport=None):
        super().__init__(config, transport)
        self._token_cache: Dict[int, Tuple[str, float]] = {}

    @staticmethod
    def domain_url(system: SystemConfig) -> str:
        if not system.base_url:
            raise ConnectorError(f"Nexquare config {system.config_id} has no domain URL", source=SchoolSource.NEXQUARE.value)
        url = system.base_url.strip().rstrip("/")
        return url if url.startswith("http") else f"https://{url}"

    async def get_access_token(self, system: SystemConfig, force_refresh: bool = False) -> str:
        """OAuth2 client-credentials token, cached per config until shortly before expiry."""
        now = time.time()
        cached = self._token_cache.get(system.config_id)
        if not force_refresh and cached and now < cached[1]:
            return cached[0]

        log.debug(f"Fetching Nexquare OAuth token for config {system.config_id}")
        response = await self._send(
            "POST",
            f"{self.domain_url(system)}{TOKEN_PATH}",
            data={
                "grant_type": "client_credentials",
                "client_id": system.credentials.get("client_id", ""),
                "client_secret": system.credentials.get("client_secret", ""),
            },
            headers={"Accept": "application/json"},
        )
        token_data = self._json(response)
        token = token_data.get("access_token") if isinstance(token_data, dict) else None
        if not token:
            raise ConnectorError("Invalid token response: missing access_token", source=self.source)
        expires_in = int(token_data.get("expires_in") or DEFAULT_TOKEN_TTL)
        self._token_cache[system.config_id] = (token, now + expires_in - TOKEN_EXPIRY_BUFFER)
        return token

    async def _get(self, system: SystemConfig, path: str, endpoint: str, params: Dict[str, Any]) -> Any:
        """GET with bearer auth; a 401 forces one token refresh and retry."""
        url = f"{self.domain_url(system)}{path}"
        token = await self.get_access_token(system)
        response = await self._send("GET", url, endpoint=endpoint, params=params,
                                    headers={"Authorization": f"Bearer {token}", "Accept": "application/json"})
        if response.status_code == 401:
            log.info(f"Nexquare token rejected for config {system.config_id}, refreshing")
            token = await self.get_access_token(system, force_refresh=True)
            response = await self._send("GET", url, endpoint=endpoint, params=params,
                                        headers={"Authorization": f"Bearer {token}", "Accept": "application/json"})
        return self._json(response, endpoint)

    def _params(self, endpoint: str, school_id: str, context: SyncContext) -> Dict[str, Any]:
        if endpoint in ("student-allocations", "staff-allocations"):
            return {"academicYear": context.academic_year}
        if endpoint == "daily-plans":
            # The API really does spell it with three o's
            return {"fromDate": context.start_date, "toDate": context.end_date, "schooolId": school_id}
        if endpoint == "daily-attendance":
            return {"startDate": context.start_date, "endDate": context.end_date, "schoolId": school_id,
                    "categoryRequired": "true", "rangeType": 0}
        if endpoint == "student-assessments":
            return {"schoolIds": school_id, "academicYear": context.academic_year}
        return {}

    async def fetch_records(self, system: SystemConfig, endpoint: str, school_id: str,
                            context: SyncContext) -> List[Dict[str, Any]]:
        """Fetches every page of an endpoint for ``school_id``."""
        self._check_endpoint(endpoint)
        path_template, data_keys, limit = NEXQUARE_ENDPOINTS[endpoint]
        path = path_template.format(school_id=school_id)
        params = self._params(endpoint, school_id, context)

        if limit is None:
            return extract_items(await self._get(system, path, endpoint, params), data_keys)

        records: List[Dict[str, Any]] = []
        offset = 0
        while True:
            payload = await self._get(system, path, endpoint, {**params, "offset": offset, "limit": limit})
            page = extract_items(payload, data_keys)
            records.extend(page)
            log.trace(f"Nexquare {endpoint} offset {offset}: {len(page)} items")
            if len(page) < limit:
                break
            offset += limit
        return records

    async def run_endpoint(self, system: SystemConfig, endpoint: str, context: SyncContext) -> int:
        school_id = system.school_id
        records = await self.fetch_records(system, endpoint, school_id, context)
        count = context.record_store.upsert(self.source, school_id, endpoint, records)
        log.info(f"Nexquare {endpoint} synced for {system.school_name} ({school_id}): {count} records")
        return count

    async def validate_connection(self, system: SystemConfig) -> bool:
        """Validates the client credentials by requesting a fresh token."""
        try:
            await self.get_access_token(system, force_refresh=True)
            log.info(f"Nexquare connection validated for {system.school_name}")
            return True
        except ConnectorError as e:
            log.error(f"Nexquare connection validation failed for {system.school_name}: {e}")
            return False
