import asyncio

import pytest

from schoolsync.connectors import ConnectorFactory
from schoolsync.constants.sync_status import CANCELLED_OUT_OF_PROCESS_SUMMARY, CANCELLED_SUMMARY
from schoolsync.exceptions import ScopeError
from schoolsync.models.sync_run import SyncRun
from schoolsync.services.orchestrator import RunRequest, SyncOrchestrator
from schoolsync.services.scope_resolver import ScopeRequest, ScopeResolver


@pytest.fixture
def orchestrator(ledger, session_factory, connector_factory) -> SyncOrchestrator:
    return SyncOrchestrator(ledger, ScopeResolver(session_factory), connector_factory)


@pytest.fixture
def campus(seed):
    """One node with a ManageBac and a Nexquare school registered on a child node."""
    seed.node("region")
    seed.node("campus", parent="region")
    seed.register("campus", "MB1", "mb")
    seed.register("campus", "NX1", "nex")
    return {
        "mb": seed.config("mb", "Alpha School", "MB1"),
        "nex": seed.config("nex", "Beta School", "NX1"),
    }


def _request(**scope) -> RunRequest:
    return RunRequest(scope=ScopeRequest(**scope), academic_year="2024", triggered_by="tester")


@pytest.mark.asyncio
async def test_node_scope_with_descendants_syncs_both_sources(orchestrator, campus, ledger, recorder):
    result = await orchestrator.run(_request(node_ids=["region"], include_descendants=True))

    assert result.status == "completed"
    assert (result.total_schools, result.schools_succeeded, result.schools_failed) == (2, 2, 0)
    assert result.error_summary is None

    run = ledger.get_run(result.run_id)
    assert run.status == "completed"
    assert run.node_id == "region"
    assert run.completed_at is not None
    assert sorted(s.school_source for s in run.schools) == ["mb", "nex"]
    assert {c.source for c in recorder.calls} == {"mb", "nex"}


@pytest.mark.asyncio
async def test_endpoint_failure_fails_only_that_school(orchestrator, campus, ledger, recorder):
    recorder.fail("MB1", "academic-years", RuntimeError("HTTP 500"))
    request = _request(all=True)
    request.endpoints_mb = ["school", "academic-years", "grades"]

    result = await orchestrator.run(request)

    assert result.status == "completed"
    assert (result.schools_succeeded, result.schools_failed) == (1, 1)
    assert result.error_summary == "Alpha School (mb): HTTP 500"

    run = ledger.get_run(result.run_id)
    mb = next(s for s in run.schools if s.school_source == "mb")
    assert mb.status == "failed"
    assert [e["endpoint"] for e in mb.endpoint_log] == ["school", "academic-years"]
    assert run.error_summary == "Alpha School (mb): HTTP 500"


@pytest.mark.asyncio
async def test_run_fails_when_nothing_succeeds(orchestrator, campus, recorder):
    recorder.fail("MB1", "school")
    recorder.fail("NX1", "schools")

    result = await orchestrator.run(_request(all=True))

    assert result.status == "failed"
    assert (result.schools_succeeded, result.schools_failed) == (0, 2)
    assert result.error_summary.count(";") == 1


@pytest.mark.asyncio
async def test_empty_scope_completes_with_zero_schools(orchestrator, ledger, recorder):
    result = await orchestrator.run(_request(all=True))

    assert result.status == "completed"
    assert result.total_schools == 0
    assert ledger.get_run(result.run_id).total_schools == 0
    assert recorder.instances == []


@pytest.mark.asyncio
async def test_cancellation_after_first_pipeline_row(orchestrator, seed, ledger, recorder):
    seed.config("nex", "Beta School", "NX1")
    seed.config("nex", "Delta School", "NX2")
    cancel = asyncio.Event()
    recorder.after_each = lambda system, endpoint: cancel.set() if system.school_id == "NX1" else None
    request = _request(all=True)
    request.endpoints_nex = ["schools"]

    result = await orchestrator.run(request, cancel)

    assert result.status == "cancelled"
    assert result.error_summary == CANCELLED_SUMMARY
    run = ledger.get_run(result.run_id)
    assert run.status == "cancelled"
    assert [s.status for s in run.schools] == ["completed", "skipped"]
    assert run.schools_succeeded == 1
    assert [c.school_id for c in recorder.calls] == ["NX1"]


@pytest.mark.asyncio
async def test_ledger_cancel_mid_run_stays_cancelled(orchestrator, seed, ledger, recorder):
    seed.config("nex", "Beta School", "NX1")
    seed.config("nex", "Delta School", "NX2")

    def cancel_from_elsewhere(system, endpoint):
        if system.school_id == "NX1":
            ledger.force_cancel(ledger.list_runs()[0].id, CANCELLED_OUT_OF_PROCESS_SUMMARY)

    recorder.after_each = cancel_from_elsewhere
    request = _request(all=True)
    request.endpoints_nex = ["schools"]

    result = await orchestrator.run(request)

    assert result.status == "cancelled"
    assert result.error_summary == CANCELLED_OUT_OF_PROCESS_SUMMARY
    run = ledger.get_run(result.run_id)
    assert run.status == "cancelled"
    assert run.error_summary == CANCELLED_OUT_OF_PROCESS_SUMMARY
    # NX1 was still running when the run was closed; nothing reopens either attempt
    assert [s.status for s in run.schools] == ["skipped", "skipped"]
    assert all(s.endpoint_log == [] and s.current_endpoint is None for s in run.schools)
    assert (run.schools_succeeded, run.schools_failed) == (0, 0)


@pytest.mark.asyncio
async def test_pending_run_cancelled_before_start_is_not_run(orchestrator, campus, ledger, recorder):
    run_id = ledger.create_run("all", "2024", "tester", status="pending")
    ledger.force_cancel(run_id, CANCELLED_OUT_OF_PROCESS_SUMMARY)
    request = _request(all=True)
    request.existing_run_id = run_id

    result = await orchestrator.run(request)

    assert result.status == "cancelled"
    assert result.total_schools == 0
    assert recorder.calls == []
    assert ledger.get_run(run_id).started_at is None


@pytest.mark.asyncio
async def test_cancel_before_start(orchestrator, campus, ledger, recorder):
    cancel = asyncio.Event()
    cancel.set()

    result = await orchestrator.run(_request(all=True), cancel)

    assert result.status == "cancelled"
    assert result.schools_succeeded == 0
    assert recorder.calls == []
    assert {s.status for s in ledger.get_run(result.run_id).schools} == {"skipped"}


@pytest.mark.asyncio
async def test_counts_never_exceed_total(orchestrator, campus, ledger, recorder, db):
    seen = []

    def check_counts(system, endpoint):
        db.expire_all()
        run = db.query(SyncRun).order_by(SyncRun.id.desc()).first()
        seen.append(run.schools_succeeded + run.schools_failed <= run.total_schools)

    recorder.after_each = check_counts
    recorder.fail("NX1", "students")
    await orchestrator.run(_request(all=True))

    assert seen and all(seen)


@pytest.mark.asyncio
async def test_malformed_scope_creates_no_run(orchestrator, db):
    with pytest.raises(ScopeError):
        await orchestrator.run(_request(all=True, node_ids=["region"]))
    request = _request(all=True)
    request.endpoints_mb = ["attendance"]
    with pytest.raises(ScopeError):
        await orchestrator.run(request)
    assert db.query(SyncRun).count() == 0


class _ExplodingResolver:
    def resolve(self, scope):
        raise RuntimeError("node table unavailable")


@pytest.mark.asyncio
async def test_setup_failure_finalizes_run_and_reraises(ledger, connector_factory, db):
    orchestrator = SyncOrchestrator(ledger, _ExplodingResolver(), connector_factory)

    with pytest.raises(RuntimeError):
        await orchestrator.run(_request(all=True))

    run = db.query(SyncRun).one()
    assert run.status == "failed"
    assert run.error_summary == "Setup failed: node table unavailable"
    assert run.completed_at is not None


@pytest.mark.asyncio
async def test_existing_pending_run_is_started(orchestrator, campus, ledger):
    run_id = ledger.create_run("all", "2024", "tester", status="pending")
    request = _request(all=True)
    request.existing_run_id = run_id

    result = await orchestrator.run(request)

    assert result.run_id == run_id
    run = ledger.get_run(run_id)
    assert run.status == "completed"
    assert run.started_at is not None


@pytest.mark.asyncio
async def test_track_crash_fails_that_tracks_schools(ledger, session_factory, connector_types, campus):
    def broken_nexquare(config):
        raise RuntimeError("Nexquare client misconfigured")

    factory = ConnectorFactory(connector_types={
        **connector_types,
        "nex": broken_nexquare,
    })
    orchestrator = SyncOrchestrator(ledger, ScopeResolver(session_factory), factory)

    result = await orchestrator.run(_request(all=True))

    assert result.status == "completed"
    assert (result.schools_succeeded, result.schools_failed) == (1, 1)
    nex = next(s for s in ledger.get_run(result.run_id).schools if s.school_source == "nex")
    assert nex.status == "failed"
    assert nex.error_message == "Track crashed: Nexquare client misconfigured"
