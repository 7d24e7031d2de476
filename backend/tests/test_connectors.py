import httpx
import pytest

from schoolsync.connectors import ConnectorFactory
from schoolsync.connectors.base import SystemConfig, SyncContext, extract_items
from schoolsync.connectors.managebac_connector import ManageBacConnector
from schoolsync.connectors.nexquare_connector import NexquareConnector
from schoolsync.exceptions import ConnectorError
from schoolsync.models.external_record import ExternalRecord
from schoolsync.services.record_store import RecordStore, record_key

FAST = {"retry_backoff": 0}


@pytest.fixture
def store(session_factory) -> RecordStore:
    return RecordStore(session_factory)


@pytest.fixture
def sync_context(store) -> SyncContext:
    return SyncContext(academic_year="2024", start_date="2024-01-01", end_date="2024-12-31", record_store=store)


@pytest.fixture
def mb_system() -> SystemConfig:
    return SystemConfig(config_id=1, source="mb", school_id="MB1", school_name="Alpha School",
                        base_url="https://alpha.managebac.com", credentials={"api_token": "secret-token"})


@pytest.fixture
def nex_system() -> SystemConfig:
    return SystemConfig(config_id=2, source="nex", school_id="NX1", school_name="Beta School",
                        base_url="nex.example.com", credentials={"client_id": "cid", "client_secret": "shh"})


class MockApi:
    """Routes requests by path and keeps every request it saw."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404, json={"error": "not found"})
        return handler(request)

    def paths(self):
        return [r.url.path for r in self.requests]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.mark.parametrize("base_url,expected", [
    ("https://alpha.managebac.com", "https://api.managebac.com/v2/school"),
    ("api.managebac.com", "https://api.managebac.com/v2/school"),
    ("https://api.managebac.com/v2/", "https://api.managebac.com/v2/school"),
    (None, "https://api.managebac.com/v2/school"),
    ("http://localhost:8080", "http://localhost:8080/v2/school"),
])
def test_managebac_build_url(base_url, expected):
    assert ManageBacConnector(FAST).build_url("/school", base_url) == expected


@pytest.mark.asyncio
async def test_managebac_follows_pages_and_sends_token(mb_system, sync_context, db):
    def students(request):
        page = int(request.url.params["page"])
        data = [{"id": 1}, {"id": 2}] if page == 1 else [{"id": 3}]
        return httpx.Response(200, json={"students": data, "meta": {"total_pages": 2}})

    api = MockApi({"/v2/students": students})
    connector = ManageBacConnector(FAST, transport=api.transport)

    assert await connector.run_endpoint(mb_system, "students", sync_context) == 3
    await connector.aclose()

    assert [r.url.params["page"] for r in api.requests] == ["1", "2"]
    assert all(r.headers["auth-token"] == "secret-token" for r in api.requests)
    assert connector.current_school_id == "MB1"
    rows = db.query(ExternalRecord).filter(ExternalRecord.endpoint == "students").all()
    assert sorted(r.external_id for r in rows) == ["1", "2", "3"]
    assert {r.school_id for r in rows} == {"MB1"}


@pytest.mark.asyncio
async def test_managebac_retries_server_errors(mb_system, sync_context):
    responses = iter([httpx.Response(503), httpx.Response(200, json={"school": {"id": 77, "name": "Alpha"}})])
    api = MockApi({"/v2/school": lambda request: next(responses)})
    connector = ManageBacConnector(FAST, transport=api.transport)

    assert await connector.run_endpoint(mb_system, "school", sync_context) == 1
    assert len(api.requests) == 2


@pytest.mark.asyncio
async def test_managebac_gives_up_after_retry_budget(mb_system, sync_context):
    api = MockApi({"/v2/teachers": lambda request: httpx.Response(500, text="oops")})
    connector = ManageBacConnector({**FAST, "retry_attempts": 2}, transport=api.transport)

    with pytest.raises(ConnectorError) as exc_info:
        await connector.run_endpoint(mb_system, "teachers", sync_context)
    assert exc_info.value.status_code == 500
    assert len(api.requests) == 2


@pytest.mark.asyncio
async def test_managebac_client_errors_are_not_retried(mb_system, sync_context):
    api = MockApi({})
    connector = ManageBacConnector(FAST, transport=api.transport)

    with pytest.raises(ConnectorError) as exc_info:
        await connector.run_endpoint(mb_system, "school", sync_context)
    assert exc_info.value.status_code == 404
    assert exc_info.value.endpoint == "school"
    assert len(api.requests) == 1


@pytest.mark.asyncio
async def test_managebac_rejects_unknown_endpoint(mb_system, sync_context):
    connector = ManageBacConnector(FAST, transport=MockApi({}).transport)
    with pytest.raises(ConnectorError):
        await connector.run_endpoint(mb_system, "attendance", sync_context)


@pytest.mark.asyncio
async def test_managebac_grades_use_resolved_academic_year(mb_system, sync_context):
    years = {"academic_years": {"diploma": {"academic_years": [
        {"id": 10, "name": "2022 - 2023"},
        {"id": 11, "name": "2024 - 2025"},
    ]}}}
    api = MockApi({
        "/v2/school/academic-years": lambda request: httpx.Response(200, json=years),
        "/v2/school/grades": lambda request: httpx.Response(200, json={"grades": [{"id": "g1"}, {"id": "g2"}]}),
    })
    connector = ManageBacConnector(FAST, transport=api.transport)

    assert await connector.run_endpoint(mb_system, "academic-years", sync_context) == 2
    assert await connector.run_endpoint(mb_system, "grades", sync_context) == 2

    # Academic years are cached for the current school
    assert api.paths().count("/v2/school/academic-years") == 1
    assert api.requests[-1].url.params["academic_year_id"] == "11"


@pytest.mark.asyncio
async def test_managebac_switching_school_drops_cache(mb_system, sync_context):
    years = {"academic_years": [{"id": 5, "name": "2024"}]}
    api = MockApi({"/v2/school/academic-years": lambda request: httpx.Response(200, json=years)})
    connector = ManageBacConnector(FAST, transport=api.transport)
    other = mb_system.model_copy(update={"school_id": "MB2", "config_id": 9})

    await connector.run_endpoint(mb_system, "academic-years", sync_context)
    await connector.run_endpoint(other, "academic-years", sync_context)

    assert connector.current_school_id == "MB2"
    assert len(api.requests) == 2


def _token_route(counter):
    def token(request):
        counter.append(request)
        return httpx.Response(200, json={"access_token": f"tok-{len(counter)}", "expires_in": 3600})
    return token


@pytest.mark.asyncio
async def test_nexquare_caches_token_and_pages_by_offset(nex_system, sync_context):
    tokens = []

    def students(request):
        offset = int(request.url.params["offset"])
        size = 100 if offset == 0 else 5
        return httpx.Response(200, json={"users": [{"sourcedId": f"s{offset + i}"} for i in range(size)]})

    api = MockApi({
        "/oauth2/v1/token": _token_route(tokens),
        "/ims/oneroster/v1p1/schools/NX1/students/": students,
    })
    connector = NexquareConnector(FAST, transport=api.transport)

    assert await connector.run_endpoint(nex_system, "students", sync_context) == 105
    assert len(tokens) == 1
    gets = [r for r in api.requests if r.method == "GET"]
    assert [r.url.params["offset"] for r in gets] == ["0", "100"]
    assert all(r.headers["Authorization"] == "Bearer tok-1" for r in gets)
    assert str(api.requests[0].url).startswith("https://nex.example.com/")


@pytest.mark.asyncio
async def test_nexquare_refreshes_token_once_on_401(nex_system, sync_context):
    tokens = []

    def schools(request):
        if request.headers["Authorization"] == "Bearer tok-1":
            return httpx.Response(401)
        return httpx.Response(200, json={"orgs": [{"sourcedId": "NX1"}]})

    api = MockApi({
        "/oauth2/v1/token": _token_route(tokens),
        "/nexquare/ims/oneroster/v1p1/schools": schools,
    })
    connector = NexquareConnector(FAST, transport=api.transport)

    assert await connector.run_endpoint(nex_system, "schools", sync_context) == 1
    assert len(tokens) == 2


@pytest.mark.asyncio
async def test_nexquare_daily_plans_params(nex_system, sync_context):
    api = MockApi({
        "/oauth2/v1/token": _token_route([]),
        "/ims/oneroster/v1p1/dailyPlan": lambda request: httpx.Response(200, json={"data": [{"id": 1}]}),
    })
    connector = NexquareConnector(FAST, transport=api.transport)

    assert await connector.run_endpoint(nex_system, "daily-plans", sync_context) == 1
    params = api.requests[-1].url.params
    assert params["schooolId"] == "NX1"
    assert (params["fromDate"], params["toDate"]) == ("2024-01-01", "2024-12-31")
    assert "offset" not in params


@pytest.mark.asyncio
async def test_nexquare_bad_token_response(nex_system, sync_context):
    api = MockApi({"/oauth2/v1/token": lambda request: httpx.Response(200, json={"token_type": "bearer"})})
    connector = NexquareConnector(FAST, transport=api.transport)

    with pytest.raises(ConnectorError, match="access_token"):
        await connector.run_endpoint(nex_system, "schools", sync_context)
    assert await connector.validate_connection(nex_system) is False


def test_factory_builds_fresh_instances():
    factory = ConnectorFactory(config=FAST)
    first, second = factory.create("mb"), factory.create("mb")
    assert isinstance(first, ManageBacConnector)
    assert first is not second
    assert isinstance(factory.create("nex"), NexquareConnector)
    with pytest.raises(ValueError):
        factory.create("xx")


def test_extract_items_shapes():
    assert extract_items([{"id": 1}], ("students",)) == [{"id": 1}]
    assert extract_items({"data": {"students": [{"id": 2}]}}, ("students",)) == [{"id": 2}]
    assert extract_items({"school": {"id": 3}}, ("school",)) == [{"id": 3}]
    assert extract_items({"meta": {}}, ("students",)) == []
    with pytest.raises(ConnectorError):
        extract_items({"data": "nope"}, ("students",))


def test_record_store_upsert_is_idempotent(store, db):
    records = [{"id": 1, "name": "Ada"}, {"id": 2, "name": "Grace"}]
    assert store.upsert("mb", "MB1", "students", records) == 2
    assert store.upsert("mb", "MB1", "students", [{"id": 1, "name": "Ada L."}]) == 1

    rows = db.query(ExternalRecord).order_by(ExternalRecord.external_id).all()
    assert [r.external_id for r in rows] == ["1", "2"]
    assert rows[0].payload["name"] == "Ada L."

    # Same external id under another school is a different row
    store.upsert("mb", "MB2", "students", records[:1])
    assert db.query(ExternalRecord).count() == 3


def test_record_key_falls_back_to_content_hash(store, db):
    record = {"date": "2024-03-01", "present": True}
    assert record_key(record) == record_key(dict(reversed(list(record.items()))))
    assert record_key({"sourcedId": "abc"}) == "abc"

    assert store.upsert("nex", "NX1", "daily-attendance", [record, dict(record)]) == 1
    store.upsert("nex", "NX1", "daily-attendance", [record])
    assert db.query(ExternalRecord).count() == 1
    assert store.upsert("nex", "NX1", "daily-attendance", []) == 0
