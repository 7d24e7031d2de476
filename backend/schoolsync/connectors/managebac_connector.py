import logging
from typing import Dict, Any, List, Optional, Tuple

from schoolsync.config import settings
from schoolsync.connectors.base import BaseConnector, SystemConfig, SyncContext, extract_items
from schoolsync.constants.sync_status import SchoolSource
from schoolsync.exceptions import ConnectorError

log = logging.getLogger(__name__)

PER_PAGE = 250

# endpoint name -> (API path, payload key, paginated)
MANAGEBAC_ENDPOINTS: Dict[str, Tuple[str, str, bool]] = {
    "school": ("/school", "school", False),
    "academic-years": ("/school/academic-years", "academic_years", False),
    "grades": ("/school/grades", "grades", False),
    "subjects": ("/school/subjects", "subjects", True),
    "teachers": ("/teachers", "teachers", True),
    "students": ("/students", "students", True),
    "classes": ("/classes", "classes", True),
    "year-groups": ("/year-groups", "year_groups", True),
}


class ManageBacConnector(BaseConnector):
    """
    Connector for the ManageBac v2 API.

    Keeps a "current school" and per-school caches (academic years), so an
    instance must only ever serve one school at a time. Create one per
    system when syncing several schools.
    """

    source = SchoolSource.MANAGEBAC.value
    endpoints = tuple(MANAGEBAC_ENDPOINTS)

    def __init__(self, config: Optional[Dict[str, Any]] = None, transport=None):
        super().__init__(config, transport)
        self.current_school_id: Optional[str] = None
        self._academic_years: Optional[List[Dict[str, Any]]] = None

    def set_current_school(self, school_id: str) -> None:
        """Binds the instance to a school and drops that school's caches."""
        if school_id != self.current_school_id:
            log.debug(f"ManageBac connector switching current school {self.current_school_id} -> {school_id}")
        self.current_school_id = school_id
        self._academic_years = None

    def build_url(self, path: str, base_url: Optional[str]) -> str:
        """
        Normalizes a configured base URL into an API URL:
        - school subdomains (*.managebac.com) go to api.managebac.com
        - scheme defaults to https
        - /v2 is appended when missing
        """
        clean = (base_url or settings.managebac_default_base_url).strip().rstrip("/")
        if ".managebac.com" in clean and "api.managebac.com" not in clean:
            log.debug(f"Detected school subdomain {clean}, using api.managebac.com")
            clean = "https://api.managebac.com"
        if not clean.startswith(("http://", "https://")):
            clean = f"https://{clean}"
        if "/v2" not in clean:
            clean = f"{clean}/v2"
        return f"{clean}{path if path.startswith('/') else '/' + path}"

    def _headers(self, system: SystemConfig) -> Dict[str, str]:
        token = system.credentials.get("api_token")
        if not token:
            raise ConnectorError(f"ManageBac config {system.config_id} has no api_token", source=self.source)
        return {"auth-token": token, "Cache-Control": "no-cache", "Accept": "application/json"}

    async def _get(self, system: SystemConfig, path: str, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = await self._send(
            "GET", self.build_url(path, system.base_url), endpoint=endpoint,
            headers=self._headers(system), params=params or {},
        )
        return self._json(response, endpoint)

    async def _get_all_pages(self, system: SystemConfig, path: str, data_key: str, endpoint: str,
                             params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Follows page/per_page pagination until meta.total_pages."""
        items: List[Dict[str, Any]] = []
        page, total_pages = 1, 1
        while page <= total_pages:
            payload = await self._get(system, path, endpoint, {**(params or {}), "page": page, "per_page": PER_PAGE})
            page_items = extract_items(payload, (data_key,))
            items.extend(page_items)
            meta = payload.get("meta") if isinstance(payload, dict) else None
            total_pages = int((meta or {}).get("total_pages") or 1)
            log.trace(f"ManageBac {endpoint} page {page}/{total_pages} ({len(page_items)} items)")
            page += 1
        return items

    async def fetch_academic_years(self, system: SystemConfig) -> List[Dict[str, Any]]:
        """Academic years flattened across programs, cached for the current school."""
        if self._academic_years is not None:
            return self._academic_years
        payload = await self._get(system, MANAGEBAC_ENDPOINTS["academic-years"][0], "academic-years")
        raw = payload.get("academic_years", payload) if isinstance(payload, dict) else payload
        years: List[Dict[str, Any]] = []
        if isinstance(raw, dict):
            for program, program_data in raw.items():
                program_years = program_data.get("academic_years", []) if isinstance(program_data, dict) else []
                years.extend({**year, "program": program} for year in program_years)
        elif isinstance(raw, list):
            years = raw
        else:
            raise ConnectorError("Malformed academic years payload", source=self.source, endpoint="academic-years")
        self._academic_years = years
        return years

    async def resolve_academic_year_id(self, system: SystemConfig, academic_year: Optional[str]) -> Optional[str]:
        """Finds the ManageBac id of the academic year whose name contains ``academic_year``."""
        if not academic_year:
            return None
        for year in await self.fetch_academic_years(system):
            if academic_year in str(year.get("name", "")):
                year_id = year.get("id", year.get("uid"))
                return str(year_id) if year_id is not None else None
        log.debug(f"No ManageBac academic year matching '{academic_year}' for school {self.current_school_id}")
        return None

    async def run_endpoint(self, system: SystemConfig, endpoint: str, context: SyncContext) -> int:
        self._check_endpoint(endpoint)
        if self.current_school_id != system.school_id:
            self.set_current_school(system.school_id)

        path, data_key, paginated = MANAGEBAC_ENDPOINTS[endpoint]
        if endpoint == "academic-years":
            records = await self.fetch_academic_years(system)
        elif endpoint == "grades":
            academic_year_id = await self.resolve_academic_year_id(system, context.academic_year)
            params = {"academic_year_id": academic_year_id} if academic_year_id else {}
            records = extract_items(await self._get(system, path, endpoint, params), (data_key,))
        elif paginated:
            records = await self._get_all_pages(system, path, data_key, endpoint)
        else:
            records = extract_items(await self._get(system, path, endpoint), (data_key,))

        count = context.record_store.upsert(self.source, self.current_school_id, endpoint, records)
        log.info(f"ManageBac {endpoint} synced for {system.school_name} ({self.current_school_id}): {count} records")
        return count

    async def validate_connection(self, system: SystemConfig) -> bool:
        """Checks the API token with a cheap school lookup."""
        try:
            await self._get(system, "/school", "school")
            log.info(f"ManageBac connection validated for {system.school_name}")
            return True
        except ConnectorError as e:
            log.error(f"ManageBac connection validation failed for {system.school_name}: {e}")
            return False
