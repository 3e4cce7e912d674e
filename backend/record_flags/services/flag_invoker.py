"""
Flag Computation Invoker - runs one computation unit and captures its outcome

Nothing a unit does escapes invoke(): exceptions, timeouts, missing
registrations and unreadable results all become failure outcomes.
"""
import asyncio
import time
from typing import Any, List, Mapping, Optional

from pydantic import ValidationError

from record_flags.components.contracts import (ComputationUnitDescriptor,
                                               FlagDescriptor, SharedPayload,
                                               UnitKind, UnitOutcome)
from record_flags.core.errors import (FailureCategory, UnitFailure,
                                      classify_exception, describe_exception)
from record_flags.core.logging_config import LoggingConfig
from record_flags.core.metrics import (flag_unit_duration_seconds,
                                      flag_unit_invocations_total)
from record_flags.core.tracing import add_span_attributes, get_tracer
from record_flags.core.unit_registry import (UnitRegistry, call_unit,
                                             call_with_deadline,
                                             get_unit_registry)

logger = LoggingConfig.get_logger(__name__)


def normalize_flags(result: Any) -> List[FlagDescriptor]:
    """
    Read a unit result as a list of flags

    Accepts None (no flags), a single flag, or a list/tuple of flags where
    each item is a FlagDescriptor or a mapping validated into one.

    Raises:
        UnitFailure: the result cannot be read as flags
    """
    if result is None:
        return []
    if isinstance(result, (FlagDescriptor, Mapping)):
        result = [result]
    if not isinstance(result, (list, tuple)):
        raise UnitFailure(
            f"Unexpected result type {type(result).__name__}",
            category=FailureCategory.MALFORMED_RESULT,
        )

    flags = []
    for item in result:
        if isinstance(item, FlagDescriptor):
            flags.append(item)
        elif isinstance(item, Mapping):
            try:
                flags.append(FlagDescriptor.model_validate(dict(item)))
            except ValidationError as e:
                errors = "; ".join(
                    f"{'.'.join(str(p) for p in err['loc']) or 'flag'}: {err['msg']}"
                    for err in e.errors()
                )
                raise UnitFailure(
                    f"Invalid flag: {errors}",
                    category=FailureCategory.MALFORMED_RESULT,
                ) from e
        else:
            raise UnitFailure(
                f"Unexpected flag type {type(item).__name__}",
                category=FailureCategory.MALFORMED_RESULT,
            )
    return flags


class FlagComputationInvoker:
    """Invokes flag computation units against the shared payload"""

    def __init__(
        self,
        registry: Optional[UnitRegistry] = None,
        timeout_seconds: Optional[float] = None,
        run_sync_in_thread: bool = True,
    ):
        self.registry = registry or get_unit_registry()
        self.timeout_seconds = timeout_seconds
        self.run_sync_in_thread = run_sync_in_thread
        self.tracer = get_tracer(__name__)

    async def invoke(self, unit: ComputationUnitDescriptor, payload: SharedPayload) -> UnitOutcome:
        """
        Run a single unit

        Args:
            unit: Descriptor of the computation to run
            payload: Shared payload of the current run

        Returns:
            Flags outcome (possibly empty) or failure outcome
        """
        unit_id = unit.unit_id
        start = time.time()

        with self.tracer.start_as_current_span("flag_unit.invoke") as span:
            add_span_attributes(span, unit_id=unit_id, record_id=payload.record_id)
            try:
                fn = self.registry.get(unit_id, UnitKind.FLAG_COMPUTATION)
                call = call_unit(fn, payload, run_sync_in_thread=self.run_sync_in_thread)
                result = await call_with_deadline(call, self.timeout_seconds)
                flags = normalize_flags(result)
            except (asyncio.CancelledError, KeyboardInterrupt, GeneratorExit):
                raise
            except BaseException as e:  # SystemExit from a unit stays inside its slot
                outcome = self._failure(unit_id, e)
            else:
                outcome = UnitOutcome.of_flags(unit_id, flags)

            duration = time.time() - start
            status = "failure" if outcome.is_failure else ("flags" if outcome.flags else "empty")
            flag_unit_invocations_total.labels(unit_id=unit_id, status=status).inc()
            flag_unit_duration_seconds.labels(unit_id=unit_id).observe(duration)
            add_span_attributes(
                span,
                status=status,
                flag_count=len(outcome.flags),
                duration_ms=int(duration * 1000),
            )

        if not outcome.is_failure:
            logger.debug(
                f"Unit {unit_id} produced {len(outcome.flags)} flag(s) in {duration:.3f}s",
                extra={"unit_id": unit_id, "record_id": payload.record_id},
            )
        return outcome

    def _failure(self, unit_id: str, exc: BaseException) -> UnitOutcome:
        category = classify_exception(exc)
        reason = describe_exception(exc)
        logger.warning(
            f"Unit {unit_id} failed ({category.value}): {reason}",
            exc_info=category == FailureCategory.EXCEPTION,
            extra={"unit_id": unit_id, "failure_category": category.value},
        )
        return UnitOutcome.of_failure(unit_id, reason, category.value)
