"""
Shared Data Resolver - fetches the record snapshot handed to every unit of a run
"""
import asyncio
import time
from typing import Optional

from record_flags.components.contracts import (ComputationUnitDescriptor,
                                               SharedPayload, UnitKind)
from record_flags.core.errors import (DeadlineExceeded, ProviderError,
                                      describe_exception)
from record_flags.core.logging_config import LoggingConfig
from record_flags.core.metrics import flag_shared_data_fetches_total
from record_flags.core.tracing import add_span_attributes, get_tracer
from record_flags.core.unit_registry import (UnitRegistry, call_unit,
                                             call_with_deadline,
                                             get_unit_registry)

logger = LoggingConfig.get_logger(__name__)


class SharedDataResolver:
    """
    Resolves the shared payload for a record

    The provider, when one is configured, is called exactly once per run.
    Without a provider the payload only carries the record id.
    """

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

    async def resolve_shared_payload(
        self,
        record_id: str,
        provider: Optional[ComputationUnitDescriptor] = None,
    ) -> SharedPayload:
        """
        Fetch the shared payload for record_id

        Args:
            record_id: Record the flags are computed for
            provider: Eligible provider descriptor, if any

        Returns:
            Provider payload, or the fallback payload when there is no provider

        Raises:
            ProviderError: the provider is not registered, raised, or timed out
        """
        if provider is None:
            flag_shared_data_fetches_total.labels(source="fallback", status="success").inc()
            return SharedPayload.fallback(record_id)

        with self.tracer.start_as_current_span("shared_data.resolve") as span:
            add_span_attributes(span, record_id=record_id, unit_id=provider.unit_id)
            start = time.time()
            try:
                fn = self.registry.get(provider.unit_id, UnitKind.SHARED_DATA_PROVIDER)
                call = call_unit(fn, record_id, run_sync_in_thread=self.run_sync_in_thread)
                data = await call_with_deadline(call, self.timeout_seconds)
            except asyncio.CancelledError:
                raise
            except DeadlineExceeded as e:
                flag_shared_data_fetches_total.labels(source="provider", status="failure").inc()
                raise ProviderError(
                    f"Shared data provider timed out after {e.timeout_seconds}s",
                    unit_id=provider.unit_id,
                ) from e
            except Exception as e:
                flag_shared_data_fetches_total.labels(source="provider", status="failure").inc()
                logger.error(
                    f"Shared data provider {provider.unit_id} failed for {record_id}: {e}",
                    exc_info=True,
                    extra={"record_id": record_id, "unit_id": provider.unit_id},
                )
                raise ProviderError(describe_exception(e), unit_id=provider.unit_id) from e

            duration = time.time() - start
            flag_shared_data_fetches_total.labels(source="provider", status="success").inc()
            add_span_attributes(span, duration_ms=int(duration * 1000))
            logger.debug(
                f"Fetched shared data for {record_id} via {provider.unit_id} in {duration:.3f}s",
                extra={"record_id": record_id, "unit_id": provider.unit_id},
            )

        if isinstance(data, SharedPayload):
            return data
        return SharedPayload(record_id=record_id, data=data)
