import asyncio

import pytest

from schoolsync.constants.sync_status import CellOutcome
from schoolsync.services.pipeline_track import PipelineTrack

ENDPOINTS = ["schools", "students", "staff", "classes"]


@pytest.fixture
def track(ledger, connector_factory) -> PipelineTrack:
    return PipelineTrack(ledger, connector_factory)


def _make_items(ledger, system_factory, count):
    run_id = ledger.create_run("all", "2024", "tester")
    systems = [system_factory(i, "nex", school_id=f"NX{i}") for i in range(count)]
    return run_id, ledger.materialize_school_attempts(run_id, systems)


@pytest.mark.asyncio
async def test_cells_wait_for_row_and_column_predecessors(track, ledger, system_factory, recorder, context):
    run_id, items = _make_items(ledger, system_factory, 3)
    # Uneven durations so the frontier is irregular
    recorder.delays = {("NX0", "students"): 0.02, ("NX1", "schools"): 0.015, ("NX2", "staff"): 0.005}
    recorder.default_delay = 0.001

    outcomes = await track.run(run_id, items, ENDPOINTS, context, asyncio.Event())

    assert outcomes == [[CellOutcome.COMPLETED] * 4] * 3
    cells = {(int(c.school_id[2:]), ENDPOINTS.index(c.endpoint)): c for c in recorder.calls}
    assert len(cells) == 12
    for (i, j), call in cells.items():
        if i > 0:
            assert call.start > cells[(i - 1, j)].end
        if j > 0:
            assert call.start > cells[(i, j - 1)].end


@pytest.mark.asyncio
async def test_wavefront_runs_independent_cells_concurrently(track, ledger, system_factory, recorder, context):
    run_id, items = _make_items(ledger, system_factory, 3)
    recorder.default_delay = 0.01

    await track.run(run_id, items, ENDPOINTS, context)

    assert recorder.max_in_flight >= 2
    # Never more than the anti-diagonal allows
    assert recorder.max_in_flight <= 3


@pytest.mark.asyncio
async def test_one_connector_per_run(track, ledger, system_factory, recorder, context):
    run_id, items = _make_items(ledger, system_factory, 2)
    await track.run(run_id, items, ENDPOINTS, context)
    assert len(recorder.instances) == 1
    assert recorder.closed == 1


@pytest.mark.asyncio
async def test_failure_skips_rest_of_row_only(track, ledger, system_factory, recorder, context):
    run_id, items = _make_items(ledger, system_factory, 3)
    recorder.fail("NX1", "students", RuntimeError("HTTP 503 from Nexquare"))

    outcomes = await track.run(run_id, items, ENDPOINTS, context)

    assert outcomes[1] == [CellOutcome.COMPLETED, CellOutcome.FAILED, CellOutcome.SKIPPED, CellOutcome.SKIPPED]
    assert outcomes[0] == [CellOutcome.COMPLETED] * 4
    assert outcomes[2] == [CellOutcome.COMPLETED] * 4
    assert [c.endpoint for c in recorder.calls_for("NX1")] == ["schools", "students"]

    rows = ledger.list_run_schools(run_id)[0]
    assert [r.status for r in rows] == ["completed", "failed", "completed"]
    assert rows[1].error_message == "HTTP 503 from Nexquare"
    assert [e["endpoint"] for e in rows[1].endpoint_log] == ["schools", "students"]


@pytest.mark.asyncio
async def test_row_is_marked_failed_before_the_grid_finishes(track, ledger, system_factory, recorder, context):
    run_id, items = _make_items(ledger, system_factory, 2)
    recorder.fail("NX0", "schools")
    recorder.default_delay = 0.005
    seen = []

    def observe(system, endpoint):
        seen.append(ledger.list_run_schools(run_id)[0][0].status)

    recorder.after_each = observe
    await track.run(run_id, items, ENDPOINTS, context)

    # Row 0 failed on its first cell; every later call saw it already failed
    assert seen and all(status == "failed" for status in seen)


@pytest.mark.asyncio
async def test_cancellation_skips_remaining_cells(track, ledger, system_factory, recorder, context):
    run_id, items = _make_items(ledger, system_factory, 2)
    cancel = asyncio.Event()
    recorder.after_each = lambda system, endpoint: cancel.set() if endpoint == "students" else None

    outcomes = await track.run(run_id, items, ENDPOINTS, context, cancel)

    assert cancel.is_set()
    flat = [o for row in outcomes for o in row]
    assert CellOutcome.SKIPPED in flat
    assert CellOutcome.FAILED not in flat
    # No cell starts once the signal is observed
    cancel_tick = next(c.end for c in recorder.calls if c.endpoint == "students")
    assert all(c.start < cancel_tick for c in recorder.calls)
    statuses = [r.status for r in ledger.list_run_schools(run_id)[0]]
    assert "completed" not in statuses


@pytest.mark.asyncio
async def test_cancel_before_start_attempts_nothing(track, ledger, system_factory, recorder, context):
    run_id, items = _make_items(ledger, system_factory, 2)
    cancel = asyncio.Event()
    cancel.set()

    outcomes = await track.run(run_id, items, ENDPOINTS, context, cancel)

    assert outcomes == [[CellOutcome.SKIPPED] * 4] * 2
    assert recorder.calls == []
    assert [r.status for r in ledger.list_run_schools(run_id)[0]] == ["pending", "pending"]


@pytest.mark.asyncio
async def test_empty_inputs(track, ledger, system_factory, recorder, context):
    assert await track.run(1, [], ENDPOINTS, context) == []
    run_id, items = _make_items(ledger, system_factory, 1)
    assert await track.run(run_id, items, [], context) == [[]]
    assert ledger.list_run_schools(run_id)[0][0].status == "completed"
