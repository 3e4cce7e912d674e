"""
Tests for FlagOrchestrator end-to-end behaviour
"""
import asyncio

import pytest

from flag_factories import OBJECT_TYPE, RECORD_ID, computation, flag, provider
from record_flags.components.contracts import (FlagSeverity,
                                               OrchestrationState,
                                               SharedPayload)
from record_flags.core.config import Settings
from record_flags.services.flag_orchestrator import FlagOrchestrator


class RecordingUnit:
    """Flag computation that records the payloads it was called with"""

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def compute(self, payload):
        self.calls.append(payload)
        if self.error is not None:
            raise self.error
        return self.result


class RecordingProvider:
    def __init__(self, data=None, error=None):
        self.data = data
        self.error = error
        self.calls = []

    def fetch(self, record_id):
        self.calls.append(record_id)
        if self.error is not None:
            raise self.error
        return self.data


class GatedUnit:
    """Async computation that returns once its gate opens"""

    def __init__(self, *headers):
        self.headers = headers
        self.gate = asyncio.Event()
        self.started = asyncio.Event()

    async def compute(self, payload):
        self.started.set()
        await self.gate.wait()
        return [flag(h) for h in self.headers]


def headers(state):
    return [f.header for f in state.flags]


@pytest.fixture
def orchestrator_for(registry, settings, user):
    """Factory building orchestrators on the test registry"""
    def _make(catalog, settings=settings, user_context=user):
        return FlagOrchestrator(catalog, registry=registry, settings=settings, user_context=user_context)
    return _make


@pytest.mark.asyncio
async def test_scenario_unit_failure_is_coalesced(registry, make_catalog, orchestrator_for):
    """One unit warns and another throws: warning first, then the coalesced error"""
    registry.register_computation("unitA", RecordingUnit(result=[flag("Credit hold", "WARNING")]))
    registry.register_computation("unitB", RecordingUnit(error=RuntimeError("ERP lookup failed")))
    catalog = make_catalog(computation("unitA", order=1), computation("unitB", order=2))

    orchestrator = orchestrator_for(catalog)
    state = await orchestrator.run(RECORD_ID, OBJECT_TYPE)
    await orchestrator.close()

    assert state.state == OrchestrationState.SETTLED
    assert state.is_loading is False
    assert state.has_failures is True
    assert state.notice is None
    assert [(f.severity, f.header) for f in state.flags] == [
        (FlagSeverity.WARNING, "Credit hold"),
        (FlagSeverity.ERROR, "Component Error"),
    ]
    assert state.flags[1].body == "ERP lookup failed"


@pytest.mark.asyncio
async def test_scenario_unheld_permission_never_invokes_unit(registry, make_catalog, orchestrator_for):
    secret = RecordingUnit(result=[flag("Escalated")])
    registry.register_computation("escalations", secret)
    catalog = make_catalog(computation("escalations", required_permission="case:view_escalations"))

    orchestrator = orchestrator_for(catalog)
    state = await orchestrator.run(RECORD_ID, OBJECT_TYPE)
    await orchestrator.close()

    assert state.flags == []
    assert state.has_failures is False
    assert state.is_loading is False
    assert secret.calls == []


@pytest.mark.asyncio
async def test_scenario_provider_failure_is_fatal(registry, make_catalog, orchestrator_for):
    unit = RecordingUnit(result=[flag("VIP")])
    registry.register_provider("fetch_account", RecordingProvider(error=ConnectionError("ERP down")))
    registry.register_computation("vip", unit)
    catalog = make_catalog(provider("fetch_account"), computation("vip"))

    orchestrator = orchestrator_for(catalog)
    state = await orchestrator.run(RECORD_ID, OBJECT_TYPE)
    await orchestrator.close()

    assert state.flags == []
    assert state.is_loading is False
    assert state.notice is not None
    assert state.notice.title == "Error"
    assert state.notice.variant == "error"
    assert state.notice.message == "Something went wrong in record flags! ERP down"
    assert unit.calls == []


@pytest.mark.asyncio
async def test_catalog_failure_is_fatal(registry, orchestrator_for):
    class BrokenCatalog:
        def lookup(self, object_type):
            raise OSError("configuration store unreachable")

    orchestrator = orchestrator_for(BrokenCatalog())
    state = await orchestrator.run(RECORD_ID, OBJECT_TYPE)
    await orchestrator.close()

    assert state.flags == []
    assert state.state == OrchestrationState.SETTLED
    assert "configuration store unreachable" in state.notice.message


@pytest.mark.asyncio
async def test_misconfigured_catalog_is_fatal(make_catalog, orchestrator_for):
    catalog = make_catalog(provider("one"), provider("two"), computation("vip"))

    orchestrator = orchestrator_for(catalog)
    state = await orchestrator.run(RECORD_ID, OBJECT_TYPE)
    await orchestrator.close()

    assert state.flags == []
    assert "shared data providers" in state.notice.message


@pytest.mark.asyncio
async def test_shared_payload_fetched_once(registry, make_catalog, orchestrator_for):
    fetcher = RecordingProvider(data={"tier": "gold"})
    units = [RecordingUnit(result=[flag(f"flag {i}")]) for i in range(3)]
    registry.register_provider("fetch_account", fetcher)
    for i, unit in enumerate(units):
        registry.register_computation(f"unit{i}", unit)
    catalog = make_catalog(provider("fetch_account"), *[computation(f"unit{i}", order=i) for i in range(3)])

    orchestrator = orchestrator_for(catalog)
    state = await orchestrator.run(RECORD_ID, OBJECT_TYPE)
    await orchestrator.close()

    assert fetcher.calls == [RECORD_ID]
    assert headers(state) == ["flag 0", "flag 1", "flag 2"]
    payloads = [unit.calls[0] for unit in units]
    assert all(p is payloads[0] for p in payloads)
    assert payloads[0].get("tier") == "gold"


@pytest.mark.asyncio
async def test_fallback_payload_without_provider(registry, make_catalog, orchestrator_for):
    units = [RecordingUnit(), RecordingUnit()]
    registry.register_computation("a", units[0])
    registry.register_computation("b", units[1])
    catalog = make_catalog(computation("a"), computation("b"))

    orchestrator = orchestrator_for(catalog)
    state = await orchestrator.run(RECORD_ID, OBJECT_TYPE)
    await orchestrator.close()

    assert state.flags == []
    for unit in units:
        assert len(unit.calls) == 1
        payload = unit.calls[0]
        assert isinstance(payload, SharedPayload)
        assert payload.is_fallback
        assert dict(payload.data) == {"record_id": RECORD_ID}


@pytest.mark.asyncio
async def test_no_eligible_units_settles_empty(make_catalog, orchestrator_for):
    orchestrator = orchestrator_for(make_catalog())
    state = await orchestrator.run(RECORD_ID, OBJECT_TYPE)
    await orchestrator.close()

    assert state.state == OrchestrationState.SETTLED
    assert state.flags == []
    assert state.is_loading is False


@pytest.mark.asyncio
async def test_completion_order_independence(registry, make_catalog, orchestrator_for):
    units = {uid: GatedUnit(uid.upper()) for uid in ("a", "b", "c")}
    for uid, unit in units.items():
        registry.register_computation(uid, unit)
    catalog = make_catalog(computation("a", order=1), computation("b", order=2), computation("c", order=3))

    orchestrator = orchestrator_for(catalog)
    snapshots = []
    orchestrator.subscribe(snapshots.append)
    await orchestrator.start(RECORD_ID, OBJECT_TYPE)
    await asyncio.gather(*(u.started.wait() for u in units.values()))

    units["c"].gate.set()
    await asyncio.sleep(0.01)
    assert headers(orchestrator.state) == []
    assert orchestrator.state.is_loading is True

    units["a"].gate.set()
    await asyncio.sleep(0.01)
    assert headers(orchestrator.state) == ["A"]
    assert orchestrator.phase == OrchestrationState.DISPATCHING

    units["b"].gate.set()
    state = await orchestrator.wait_settled(timeout=1)
    await orchestrator.close()

    assert headers(state) == ["A", "B", "C"]
    # Every snapshot extends the previous one
    seen = []
    for snapshot in snapshots:
        current = headers(snapshot)
        assert current[:len(seen)] == seen
        seen = current


@pytest.mark.asyncio
async def test_snapshots_are_delivered_through_the_run(registry, make_catalog, orchestrator_for):
    registry.register_computation("a", RecordingUnit(result=[flag("A")]))
    orchestrator = orchestrator_for(make_catalog(computation("a")))
    snapshots = []
    orchestrator.subscribe(snapshots.append)

    state = await orchestrator.run(RECORD_ID, OBJECT_TYPE)
    await orchestrator.close()

    phases = [s.state for s in snapshots]
    assert phases[0] == OrchestrationState.RESOLVING
    assert OrchestrationState.FETCHING_SHARED_DATA in phases
    assert phases[-1] == OrchestrationState.SETTLED
    assert all(s.is_loading for s in snapshots[:-1])
    assert snapshots[-1] == state
    assert {s.run_id for s in snapshots} == {state.run_id}


@pytest.mark.asyncio
async def test_refresh_cancels_superseded_run(registry, make_catalog, orchestrator_for):
    calls = []
    cancelled = asyncio.Event()

    async def account_status(payload):
        calls.append(payload)
        if len(calls) == 1:
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.set()
                raise
            return [flag("stale")]
        return [flag("fresh")]

    registry.register_computation("status", account_status)
    orchestrator = orchestrator_for(make_catalog(computation("status")))

    first_run = await orchestrator.start(RECORD_ID, OBJECT_TYPE)
    while not calls:
        await asyncio.sleep(0)
    assert orchestrator.phase == OrchestrationState.DISPATCHING

    assert await orchestrator.on_refresh() is True
    await asyncio.wait_for(cancelled.wait(), timeout=1)
    await orchestrator.close()

    assert orchestrator.state.run_id != first_run
    assert headers(orchestrator.state) == ["fresh"]


@pytest.mark.asyncio
async def test_refresh_drops_late_outcomes_of_stale_run(registry, make_catalog, orchestrator_for):
    settings = Settings(enable_tracing=False, flag_cancel_superseded_runs=False)
    gate = asyncio.Event()
    stale_finished = asyncio.Event()
    calls = []

    async def account_status(payload):
        calls.append(payload)
        if len(calls) == 1:
            await gate.wait()
            stale_finished.set()
            return [flag("stale")]
        return [flag("fresh")]

    registry.register_computation("status", account_status)
    orchestrator = orchestrator_for(make_catalog(computation("status")), settings=settings)

    await orchestrator.start(RECORD_ID, OBJECT_TYPE)
    while not calls:
        await asyncio.sleep(0)

    await orchestrator.on_refresh()
    newest = orchestrator.state
    assert headers(newest) == ["fresh"]

    gate.set()
    await asyncio.wait_for(stale_finished.wait(), timeout=1)
    await asyncio.sleep(0.01)
    await orchestrator.close()

    assert orchestrator.state == newest
    assert headers(orchestrator.state) == ["fresh"]


@pytest.mark.asyncio
async def test_refresh_after_settle_reruns_pipeline(registry, make_catalog, orchestrator_for):
    fetcher = RecordingProvider(data={})
    unit = RecordingUnit(result=[flag("A")])
    registry.register_provider("fetch_account", fetcher)
    registry.register_computation("a", unit)
    orchestrator = orchestrator_for(make_catalog(provider("fetch_account"), computation("a")))

    first = await orchestrator.run(RECORD_ID, OBJECT_TYPE)
    assert await orchestrator.on_refresh() is True
    second = orchestrator.state
    await orchestrator.close()

    assert first.run_id != second.run_id
    assert headers(second) == ["A"]
    assert len(fetcher.calls) == 2
    assert len(unit.calls) == 2


@pytest.mark.asyncio
async def test_refresh_before_start_raises(make_catalog, orchestrator_for):
    orchestrator = orchestrator_for(make_catalog())
    with pytest.raises(RuntimeError):
        await orchestrator.on_refresh()


@pytest.mark.asyncio
async def test_failure_channel_receives_each_failure(registry, make_catalog, orchestrator_for):
    registry.register_computation("a", RecordingUnit(error=ValueError("bad data")))
    registry.register_computation("b", RecordingUnit(error=ValueError("bad data")))
    registry.register_computation("c", RecordingUnit(result=[flag("C")]))
    catalog = make_catalog(computation("a", order=1), computation("b", order=2), computation("c", order=3))

    orchestrator = orchestrator_for(catalog)
    notices = []
    orchestrator.subscribe_failures(notices.append)
    state = await orchestrator.run(RECORD_ID, OBJECT_TYPE)
    await orchestrator.close()

    assert sorted(n.unit_id for n in notices) == ["a", "b"]
    assert {n.reason for n in notices} == {"bad data"}
    assert {n.run_id for n in notices} == {state.run_id}
    assert headers(state) == ["Component Error", "C"]
    assert state.flags[0].body == "bad data"


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery(registry, make_catalog, orchestrator_for):
    registry.register_computation("a", RecordingUnit())
    orchestrator = orchestrator_for(make_catalog(computation("a")))
    snapshots = []
    unsubscribe = orchestrator.subscribe(snapshots.append)
    unsubscribe()

    await orchestrator.run(RECORD_ID, OBJECT_TYPE)
    await orchestrator.close()
    assert snapshots == []


@pytest.mark.asyncio
async def test_async_and_failing_subscribers(registry, make_catalog, orchestrator_for):
    registry.register_computation("a", RecordingUnit(result=[flag("A")]))
    orchestrator = orchestrator_for(make_catalog(computation("a")))
    received = []

    def broken(state):
        raise RuntimeError("render failed")

    async def collect(state):
        received.append(state)

    orchestrator.subscribe(broken)
    orchestrator.subscribe(collect)
    state = await orchestrator.run(RECORD_ID, OBJECT_TYPE)
    await asyncio.sleep(0.01)
    await orchestrator.close()

    assert headers(state) == ["A"]
    assert received[-1] == state


@pytest.mark.asyncio
async def test_hung_unit_keeps_loading_without_timeout(registry, make_catalog, orchestrator_for):
    hung = GatedUnit("never")
    registry.register_computation("hung", hung)
    registry.register_computation("quick", RecordingUnit(result=[flag("Quick")]))
    catalog = make_catalog(computation("quick", order=1), computation("hung", order=2))

    orchestrator = orchestrator_for(catalog)
    await orchestrator.start(RECORD_ID, OBJECT_TYPE)

    with pytest.raises(asyncio.TimeoutError):
        await orchestrator.wait_settled(timeout=0.1)
    assert orchestrator.state.is_loading is True
    assert headers(orchestrator.state) == ["Quick"]
    await orchestrator.close()


@pytest.mark.asyncio
async def test_unit_timeout_setting_settles_run(registry, make_catalog, orchestrator_for):
    settings = Settings(enable_tracing=False, flag_unit_timeout_seconds=0.05)
    registry.register_computation("hung", GatedUnit("never"))
    registry.register_computation("quick", RecordingUnit(result=[flag("Quick")]))
    catalog = make_catalog(computation("quick", order=1), computation("hung", order=2))

    orchestrator = orchestrator_for(catalog, settings=settings)
    state = await orchestrator.run(RECORD_ID, OBJECT_TYPE, timeout=1)
    await orchestrator.close()

    assert headers(state) == ["Quick", "Component Error"]
    assert "Timed out" in state.flags[1].body


@pytest.mark.asyncio
async def test_close_cancels_in_flight_units(registry, make_catalog, orchestrator_for):
    hung = GatedUnit("never")
    registry.register_computation("hung", hung)
    orchestrator = orchestrator_for(make_catalog(computation("hung")))
    snapshots = []
    orchestrator.subscribe(snapshots.append)

    await orchestrator.start(RECORD_ID, OBJECT_TYPE)
    await hung.started.wait()
    delivered = len(snapshots)
    await orchestrator.close()

    assert len(snapshots) == delivered
    with pytest.raises(RuntimeError):
        await orchestrator.start(RECORD_ID, OBJECT_TYPE)


@pytest.mark.asyncio
async def test_close_releases_waiters(registry, make_catalog, orchestrator_for):
    hung = GatedUnit("never")
    registry.register_computation("hung", hung)
    orchestrator = orchestrator_for(make_catalog(computation("hung")))

    await orchestrator.start(RECORD_ID, OBJECT_TYPE)
    await hung.started.wait()
    waiter = asyncio.create_task(orchestrator.wait_settled())
    await asyncio.sleep(0.01)
    await orchestrator.close()

    with pytest.raises(RuntimeError, match="closed"):
        await asyncio.wait_for(waiter, timeout=1)


@pytest.mark.asyncio
async def test_has_failures_published_while_earlier_unit_pending(registry, make_catalog, orchestrator_for):
    first = GatedUnit("First")
    registry.register_computation("first", first)
    registry.register_computation("broken", RecordingUnit(error=RuntimeError("boom")))
    catalog = make_catalog(computation("first", order=1), computation("broken", order=2))

    orchestrator = orchestrator_for(catalog)
    failures = []
    orchestrator.subscribe_failures(failures.append)
    await orchestrator.start(RECORD_ID, OBJECT_TYPE)
    await first.started.wait()
    for _ in range(100):
        if failures:
            break
        await asyncio.sleep(0.01)

    assert [n.unit_id for n in failures] == ["broken"]
    assert orchestrator.state.has_failures is True
    assert headers(orchestrator.state) == []

    first.gate.set()
    state = await orchestrator.wait_settled(timeout=1)
    await orchestrator.close()
    assert headers(state) == ["First", "Component Error"]
