"""
Flag catalog: where computation unit descriptors come from, and which of them
apply to a given record and user.
"""
import inspect
from typing import (Any, Callable, Dict, Iterable, List, Mapping, Optional,
                    Protocol, Sequence, Union)

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from record_flags.components.contracts import (ComputationUnitDescriptor,
                                               ResolvedUnits)
from record_flags.core.errors import (CatalogError, CatalogMisconfigured,
                                      CatalogUnavailable)
from record_flags.core.logging_config import LoggingConfig
from record_flags.core.permissions import ANONYMOUS, AuthorizationContext
from record_flags.core.tracing import add_span_attributes, get_tracer
from record_flags.models.computation_unit import ComputationUnitRecord

logger = LoggingConfig.get_logger(__name__)

DescriptorLike = Union[ComputationUnitDescriptor, Mapping[str, Any]]


class MetadataCatalog(Protocol):
    """Source of computation unit descriptors; lookup may be sync or async"""

    def lookup(self, object_type: str) -> Sequence[DescriptorLike]:
        ...


class InMemoryMetadataCatalog:
    """Catalog held in memory, for embedding and tests"""

    def __init__(self, descriptors: Iterable[DescriptorLike] = ()):
        self._descriptors: List[ComputationUnitDescriptor] = [
            d if isinstance(d, ComputationUnitDescriptor) else ComputationUnitDescriptor.model_validate(d)
            for d in descriptors
        ]
        self.lookup_count = 0

    def add(self, descriptor: DescriptorLike) -> None:
        if not isinstance(descriptor, ComputationUnitDescriptor):
            descriptor = ComputationUnitDescriptor.model_validate(descriptor)
        self._descriptors.append(descriptor)

    def lookup(self, object_type: str) -> List[ComputationUnitDescriptor]:
        self.lookup_count += 1
        return [d for d in self._descriptors if d.object_type == object_type]


class SqlMetadataCatalog:
    """Catalog backed by the record_flag_units table"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def lookup(self, object_type: str) -> List[ComputationUnitDescriptor]:
        db = None
        try:
            db = self.session_factory()
            rows = (
                db.query(ComputationUnitRecord)
                .filter(ComputationUnitRecord.object_type == object_type)
                .order_by(ComputationUnitRecord.sort_order, ComputationUnitRecord.unit_id)
                .all()
            )
            return [row.to_descriptor() for row in rows]
        except SQLAlchemyError as e:
            logger.error(
                f"Flag catalog lookup failed for {object_type}: {e}",
                exc_info=True,
                extra={"object_type": object_type},
            )
            raise CatalogUnavailable(f"Flag catalog is unavailable: {e.__class__.__name__}") from e
        except ValidationError as e:
            raise CatalogMisconfigured(f"Invalid flag catalog entry for {object_type}: {e}") from e
        finally:
            if db is not None:
                db.close()


class CatalogFilter:
    """
    Resolves the units eligible for a record

    - drops inactive units
    - drops units whose required permission the user lacks (they are never invoked)
    - sorts by (order, unit_id)
    - returns the shared data provider separately
    """

    def __init__(self, catalog: MetadataCatalog):
        self.catalog = catalog
        self.tracer = get_tracer(__name__)

    async def _lookup(self, object_type: str) -> Sequence[DescriptorLike]:
        try:
            result = self.catalog.lookup(object_type)
            if inspect.isawaitable(result):
                result = await result
        except CatalogError:
            raise
        except Exception as e:
            raise CatalogUnavailable(f"Flag catalog lookup failed: {e}") from e
        return result or []

    @staticmethod
    def _coerce(items: Sequence[DescriptorLike]) -> List[ComputationUnitDescriptor]:
        descriptors = []
        for item in items:
            if isinstance(item, ComputationUnitDescriptor):
                descriptors.append(item)
                continue
            try:
                descriptors.append(ComputationUnitDescriptor.model_validate(item))
            except ValidationError as e:
                raise CatalogMisconfigured(f"Invalid flag catalog entry: {e}") from e
        return descriptors

    async def resolve_units(
        self,
        object_type: str,
        user_context: Optional[AuthorizationContext] = None,
    ) -> ResolvedUnits:
        """
        Resolve the provider and ordered computations for an object type

        Raises:
            CatalogUnavailable: the catalog could not be read
            CatalogMisconfigured: duplicate unit ids or several active providers
        """
        user_context = user_context or ANONYMOUS

        with self.tracer.start_as_current_span("catalog_filter.resolve_units") as span:
            add_span_attributes(span, object_type=object_type)

            descriptors = []
            for descriptor in self._coerce(await self._lookup(object_type)):
                if descriptor.object_type != object_type:
                    logger.warning(
                        f"Ignoring unit {descriptor.unit_id} configured for {descriptor.object_type}",
                        extra={"object_type": object_type},
                    )
                    continue
                descriptors.append(descriptor)

            seen: Dict[str, ComputationUnitDescriptor] = {}
            for descriptor in descriptors:
                if descriptor.unit_id in seen:
                    raise CatalogMisconfigured(
                        f"Unit id '{descriptor.unit_id}' is configured more than once for {object_type}"
                    )
                seen[descriptor.unit_id] = descriptor

            active = [d for d in descriptors if d.is_active]
            providers = [d for d in active if d.is_provider]
            if len(providers) > 1:
                raise CatalogMisconfigured(
                    f"{object_type} has {len(providers)} active shared data providers: "
                    + ", ".join(sorted(p.unit_id for p in providers))
                )

            eligible = []
            for descriptor in active:
                permission = descriptor.required_permission
                if permission and not user_context.has_permission(permission):
                    logger.debug(
                        f"Excluding unit {descriptor.unit_id}: missing permission {permission}",
                        extra={"object_type": object_type, "unit_id": descriptor.unit_id},
                    )
                    continue
                eligible.append(descriptor)

            provider = next((d for d in eligible if d.is_provider), None)
            computations = tuple(sorted(
                (d for d in eligible if not d.is_provider),
                key=lambda d: d.sort_key,
            ))

            add_span_attributes(
                span,
                units_configured=len(descriptors),
                units_eligible=len(computations),
                has_provider=provider is not None,
            )
            logger.debug(
                f"Resolved {len(computations)} of {len(descriptors)} units for {object_type}",
                extra={"object_type": object_type},
            )
            return ResolvedUnits(provider=provider, computations=computations)
