"""
Flag Orchestrator - drives one record's flag pipeline

Idle -> Resolving -> FetchingSharedData -> Dispatching -> Settled

Each run gets its own id. A refresh starts a new run from Resolving; outcomes
tagged with a superseded run id are dropped, and in-flight tasks of the old
run are cancelled on a best-effort basis.
"""
import asyncio
import inspect
import time
from typing import Any, Callable, Dict, List, Optional, Set
from uuid import uuid4

from record_flags.components.contracts import (AggregateState,
                                               ComputationUnitDescriptor,
                                               FailureNotice,
                                               OrchestrationState,
                                               SharedPayload, TopLevelNotice,
                                               UnitOutcome)
from record_flags.core.config import Settings, get_settings
from record_flags.core.errors import (CatalogError, ProviderError,
                                      RecordFlagsError, describe_exception)
from record_flags.core.logging_config import LoggingConfig
from record_flags.core.metrics import (flag_run_duration_seconds,
                                      flag_runs_total,
                                      flag_stale_outcomes_total)
from record_flags.core.permissions import ANONYMOUS, AuthorizationContext
from record_flags.core.tracing import add_span_attributes, get_tracer
from record_flags.core.unit_registry import UnitRegistry, get_unit_registry
from record_flags.services.catalog_service import (CatalogFilter,
                                                   MetadataCatalog)
from record_flags.services.flag_invoker import FlagComputationInvoker
from record_flags.services.result_aggregator import ResultAggregator
from record_flags.services.shared_data_resolver import SharedDataResolver

logger = LoggingConfig.get_logger(__name__)

StateCallback = Callable[[AggregateState], Any]
FailureCallback = Callable[[FailureNotice], Any]


class FlagOrchestrator:
    """
    Orchestrates flag computation for one record

    Usage:
        orchestrator = FlagOrchestrator(catalog)
        unsubscribe = orchestrator.subscribe(render)
        await orchestrator.start("rec-1", "Account", user_context)
        ...
        await orchestrator.on_refresh()
    """

    def __init__(
        self,
        catalog: MetadataCatalog,
        registry: Optional[UnitRegistry] = None,
        settings: Optional[Settings] = None,
        user_context: Optional[AuthorizationContext] = None,
    ):
        settings = settings or get_settings()
        registry = registry or get_unit_registry()

        self.catalog_filter = CatalogFilter(catalog)
        self.resolver = SharedDataResolver(
            registry,
            timeout_seconds=settings.flag_unit_timeout_seconds,
            run_sync_in_thread=settings.flag_run_sync_units_in_thread,
        )
        self.invoker = FlagComputationInvoker(
            registry,
            timeout_seconds=settings.flag_unit_timeout_seconds,
            run_sync_in_thread=settings.flag_run_sync_units_in_thread,
        )
        self.error_header = settings.flag_error_header
        self.notice_prefix = settings.flag_notice_prefix
        self.cancel_superseded = settings.flag_cancel_superseded_runs
        self.user_context = user_context or ANONYMOUS
        self.tracer = get_tracer(__name__)

        self.record_id: Optional[str] = None
        self.object_type: Optional[str] = None

        self._run_id: Optional[str] = None
        self._phase = OrchestrationState.IDLE
        self._state = AggregateState()
        self._aggregator: Optional[ResultAggregator] = None
        self._run_started_at: Optional[float] = None
        self._run_task: Optional[asyncio.Task] = None
        self._unit_tasks: Set[asyncio.Task] = set()
        self._callback_tasks: Set[asyncio.Task] = set()
        self._settled = asyncio.Event()
        self._subscribers: List[StateCallback] = []
        self._failure_subscribers: List[FailureCallback] = []
        self._closed = False

        # Allowed transitions; RESOLVING is reachable from every non-idle state (refresh)
        self._allowed_transitions: Dict[OrchestrationState, Set[OrchestrationState]] = {
            OrchestrationState.IDLE: {OrchestrationState.RESOLVING},
            OrchestrationState.RESOLVING: {
                OrchestrationState.FETCHING_SHARED_DATA,
                OrchestrationState.SETTLED,
                OrchestrationState.RESOLVING,
            },
            OrchestrationState.FETCHING_SHARED_DATA: {
                OrchestrationState.DISPATCHING,
                OrchestrationState.SETTLED,
                OrchestrationState.RESOLVING,
            },
            OrchestrationState.DISPATCHING: {
                OrchestrationState.DISPATCHING,
                OrchestrationState.SETTLED,
                OrchestrationState.RESOLVING,
            },
            OrchestrationState.SETTLED: {OrchestrationState.RESOLVING},
        }

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    @property
    def state(self) -> AggregateState:
        """Latest aggregate state"""
        return self._state

    @property
    def phase(self) -> OrchestrationState:
        return self._phase

    @property
    def run_id(self) -> Optional[str]:
        return self._run_id

    async def start(
        self,
        record_id: str,
        object_type: str,
        user_context: Optional[AuthorizationContext] = None,
    ) -> str:
        """
        Begin a run for a record

        Returns as soon as the run is scheduled; use wait_settled() or
        subscribe() to observe the result.

        Returns:
            Id of the new run
        """
        self._ensure_open()
        self.record_id = record_id
        self.object_type = object_type
        if user_context is not None:
            self.user_context = user_context
        return self._begin_run()

    async def on_refresh(self) -> bool:
        """
        Re-run the whole pipeline for the current record

        Returns:
            True once the newest run has settled

        Raises:
            RuntimeError: if start() was never called
        """
        self._ensure_open()
        if self.record_id is None or self._phase == OrchestrationState.IDLE:
            raise RuntimeError("Cannot refresh record flags before start()")
        logger.info(
            f"Refreshing flags for {self.object_type} {self.record_id}",
            extra={"record_id": self.record_id, "object_type": self.object_type},
        )
        self._begin_run()
        await self.wait_settled()
        return True

    async def run(
        self,
        record_id: str,
        object_type: str,
        user_context: Optional[AuthorizationContext] = None,
        timeout: Optional[float] = None,
    ) -> AggregateState:
        """Start a run and wait until it settles"""
        await self.start(record_id, object_type, user_context)
        return await self.wait_settled(timeout=timeout)

    async def wait_settled(self, timeout: Optional[float] = None) -> AggregateState:
        """
        Wait until the newest run settles

        A refresh issued while waiting extends the wait to the new run.

        Raises:
            RuntimeError: the orchestrator was closed while waiting
        """
        async def _wait():
            while True:
                await self._settled.wait()
                if self._phase == OrchestrationState.SETTLED and self._state.run_id == self._run_id:
                    return self._state
                if self._closed:
                    raise RuntimeError("Flag orchestrator was closed before the run settled")

        if timeout is not None:
            return await asyncio.wait_for(_wait(), timeout=timeout)
        return await _wait()

    def subscribe(self, callback: StateCallback) -> Callable[[], None]:
        """
        Receive AggregateState snapshots as the run evolves

        The callback may be sync or async. Returns a function that removes
        the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def subscribe_failures(self, callback: FailureCallback) -> Callable[[], None]:
        """Receive a FailureNotice for each failing unit of the current run"""
        self._failure_subscribers.append(callback)

        def unsubscribe():
            if callback in self._failure_subscribers:
                self._failure_subscribers.remove(callback)

        return unsubscribe

    async def close(self) -> None:
        """Detach subscribers and cancel in-flight work"""
        if self._closed:
            return
        self._closed = True
        self._subscribers.clear()
        self._failure_subscribers.clear()
        # Release wait_settled() callers; they observe _closed and raise
        self._settled.set()

        tasks = list(self._unit_tasks) + list(self._callback_tasks)
        if self._run_task is not None:
            tasks.append(self._run_task)
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        pending = sorted(self._aggregator.pending) if self._aggregator else []
        logger.debug(
            f"Closed flag orchestrator for {self.record_id}",
            extra={"record_id": self.record_id, "pending_units": pending},
        )

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("Flag orchestrator is closed")

    def _begin_run(self) -> str:
        previous_run = self._run_id
        if previous_run is not None and self._phase != OrchestrationState.SETTLED:
            flag_runs_total.labels(status="superseded").inc()
            if self.cancel_superseded:
                self._cancel_in_flight()

        run_id = str(uuid4())
        self._run_id = run_id
        self._aggregator = None
        self._run_started_at = time.time()
        self._settled.clear()
        self._transition(run_id, OrchestrationState.RESOLVING)
        self._publish(AggregateState(run_id=run_id, state=OrchestrationState.RESOLVING))

        self._run_task = asyncio.create_task(
            self._execute(run_id, self.record_id, self.object_type, self.user_context)
        )
        logger.debug(
            f"Started flag run {run_id} for {self.object_type} {self.record_id}",
            extra={"run_id": run_id, "previous_run_id": previous_run},
        )
        return run_id

    def _cancel_in_flight(self) -> None:
        if self._run_task is not None and not self._run_task.done():
            self._run_task.cancel()
        for task in list(self._unit_tasks):
            if not task.done():
                task.cancel()

    def _transition(self, run_id: str, new_state: OrchestrationState) -> bool:
        """
        Move the current run to new_state

        Returns:
            False if run_id is no longer the current run
        """
        if run_id != self._run_id:
            return False
        allowed = self._allowed_transitions.get(self._phase, set())
        if new_state not in allowed:
            raise RuntimeError(f"Invalid flag run transition: {self._phase.value} -> {new_state.value}")
        if new_state != self._phase:
            logger.debug(
                f"Flag run {run_id}: {self._phase.value} -> {new_state.value}",
                extra={"run_id": run_id, "state": new_state.value},
            )
        self._phase = new_state
        return True

    async def _execute(
        self,
        run_id: str,
        record_id: str,
        object_type: str,
        user_context: AuthorizationContext,
    ) -> None:
        LoggingConfig.set_context(run_id=run_id, record_id=record_id, object_type=object_type)

        with self.tracer.start_as_current_span("record_flags.run") as span:
            add_span_attributes(span, run_id=run_id, record_id=record_id, object_type=object_type)
            try:
                resolved = await self.catalog_filter.resolve_units(object_type, user_context)
                if not self._transition(run_id, OrchestrationState.FETCHING_SHARED_DATA):
                    return
                self._publish(AggregateState(run_id=run_id, state=OrchestrationState.FETCHING_SHARED_DATA))

                payload = await self.resolver.resolve_shared_payload(record_id, resolved.provider)
            except CatalogError as e:
                logger.error(f"Flag catalog failed for {object_type}: {e}")
                self._settle_fatal(run_id, e, status="catalog_failed")
                return
            except ProviderError as e:
                logger.error(f"Shared data provider failed for {record_id}: {e}")
                self._settle_fatal(run_id, e, status="provider_failed")
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Flag run {run_id} failed: {e}", exc_info=True)
                self._settle_fatal(run_id, e, status="error")
                return

            if not self._transition(run_id, OrchestrationState.DISPATCHING):
                return
            units = resolved.computations
            add_span_attributes(span, unit_count=len(units), fallback_payload=payload.is_fallback)

            self._aggregator = ResultAggregator(run_id, [u.unit_id for u in units], self.error_header)
            if not units:
                self._settle(run_id)
                return
            self._publish(self._snapshot(run_id))

            tasks = []
            for slot, unit in enumerate(units):
                task = asyncio.create_task(self._run_unit(run_id, slot, unit, payload))
                self._unit_tasks.add(task)
                task.add_done_callback(self._unit_tasks.discard)
                tasks.append(task)

            results = await asyncio.gather(*tasks, return_exceptions=True)
            for unit, result in zip(units, results):
                if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                    logger.error(
                        f"Unit task {unit.unit_id} crashed: {result}",
                        exc_info=result,
                        extra={"unit_id": unit.unit_id},
                    )

    async def _run_unit(
        self,
        run_id: str,
        slot: int,
        unit: ComputationUnitDescriptor,
        payload: SharedPayload,
    ) -> None:
        outcome = await self.invoker.invoke(unit, payload)
        self._on_outcome(outcome.tagged(run_id, slot))

    def _on_outcome(self, outcome: UnitOutcome) -> None:
        aggregator = self._aggregator
        if outcome.run_id != self._run_id or aggregator is None or aggregator.run_id != outcome.run_id:
            flag_stale_outcomes_total.inc()
            logger.debug(
                f"Dropping stale outcome of {outcome.unit_id} from run {outcome.run_id}",
                extra={"unit_id": outcome.unit_id, "current_run_id": self._run_id},
            )
            return

        if not aggregator.accept(outcome):
            return

        if outcome.is_failure:
            self._notify_failure(FailureNotice(
                run_id=outcome.run_id,
                unit_id=outcome.unit_id,
                reason=outcome.failure_reason,
                category=outcome.failure_category,
            ))

        if aggregator.is_complete:
            self._settle(outcome.run_id)
        elif self._transition(outcome.run_id, OrchestrationState.DISPATCHING):
            self._publish(self._snapshot(outcome.run_id))

    def _snapshot(self, run_id: str) -> AggregateState:
        aggregator = self._aggregator
        return AggregateState(
            run_id=run_id,
            state=self._phase,
            flags=aggregator.flags if aggregator else [],
            has_failures=aggregator.has_failures if aggregator else False,
            is_loading=self._phase != OrchestrationState.SETTLED,
        )

    def _settle(self, run_id: str, notice: Optional[TopLevelNotice] = None, status: str = "settled") -> None:
        if not self._transition(run_id, OrchestrationState.SETTLED):
            return
        aggregator = self._aggregator

        if notice is not None:
            state = AggregateState(
                run_id=run_id,
                state=OrchestrationState.SETTLED,
                flags=[],
                has_failures=False,
                is_loading=False,
                notice=notice,
            )
        else:
            state = self._snapshot(run_id)

        flag_runs_total.labels(status=status).inc()
        if self._run_started_at is not None:
            flag_run_duration_seconds.observe(time.time() - self._run_started_at)

        self._publish(state)
        self._settled.set()
        logger.info(
            f"Flag run {run_id} settled with {len(state.flags)} flag(s)",
            extra={
                "run_id": run_id,
                "status": status,
                "has_failures": state.has_failures,
                "failure_reasons": aggregator.failure_reasons if aggregator and notice is None else [],
                "flag_count": len(state.flags),
            },
        )

    def _settle_fatal(self, run_id: str, error: Exception, status: str) -> None:
        detail = error.message if isinstance(error, RecordFlagsError) else describe_exception(error)
        notice = TopLevelNotice(message=f"{self.notice_prefix}{detail}")
        self._settle(run_id, notice=notice, status=status)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _publish(self, state: AggregateState) -> None:
        self._state = state
        for callback in list(self._subscribers):
            self._deliver(callback, state)

    def _notify_failure(self, notice: FailureNotice) -> None:
        for callback in list(self._failure_subscribers):
            self._deliver(callback, notice)

    def _deliver(self, callback: Callable[[Any], Any], value: Any) -> None:
        try:
            result = callback(value)
        except Exception as e:
            logger.error(f"Flag subscriber {callback!r} failed: {e}", exc_info=True)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._callback_tasks.add(task)
            task.add_done_callback(self._on_callback_done)

    def _on_callback_done(self, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Async flag subscriber failed: {error}", exc_info=error)
