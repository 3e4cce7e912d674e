"""
API routes for computing record flags
"""
import inspect
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from record_flags.components.contracts import ComputationUnitDescriptor
from record_flags.core.config import Settings, get_settings
from record_flags.core.database import get_session_local
from record_flags.core.errors import CatalogError
from record_flags.core.logging_config import LoggingConfig
from record_flags.core.permissions import (Permission, UserContext,
                                           get_user_context)
from record_flags.core.unit_registry import UnitRegistry, get_unit_registry
from record_flags.services.catalog_service import (MetadataCatalog,
                                                   SqlMetadataCatalog)
from record_flags.services.flag_orchestrator import FlagOrchestrator

router = APIRouter(prefix="/api/record-flags", tags=["record-flags"])
logger = LoggingConfig.get_logger(__name__)


def get_catalog() -> MetadataCatalog:
    """Catalog dependency; overridden in tests and by embedding applications"""
    return SqlMetadataCatalog(get_session_local())


def get_registry() -> UnitRegistry:
    return get_unit_registry()


@router.get("/units/{object_type}")
async def list_units(
    object_type: str,
    catalog: MetadataCatalog = Depends(get_catalog),
    user: UserContext = Depends(get_user_context),
) -> Dict[str, Any]:
    """
    List every configured unit for an object type, inactive ones included

    Requires the catalog view permission.
    """
    if not user.has_permission(Permission.CATALOG_VIEW):
        raise HTTPException(status_code=403, detail=f"Missing permission {Permission.CATALOG_VIEW}")

    try:
        descriptors = catalog.lookup(object_type)
        if inspect.isawaitable(descriptors):
            descriptors = await descriptors
    except CatalogError as e:
        raise HTTPException(status_code=503, detail=e.message)

    units = [
        (d if isinstance(d, ComputationUnitDescriptor) else ComputationUnitDescriptor.model_validate(d))
        for d in descriptors
    ]
    return {
        "object_type": object_type,
        "units": [u.model_dump(mode="json") for u in sorted(units, key=lambda u: u.sort_key)],
    }


@router.post("/{object_type}/{record_id}")
async def compute_flags(
    object_type: str,
    record_id: str,
    catalog: MetadataCatalog = Depends(get_catalog),
    registry: UnitRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
    user: UserContext = Depends(get_user_context),
) -> Dict[str, Any]:
    """
    Run the flag pipeline for one record and return the settled state

    Catalog and provider failures are reported in the `notice` field, not as
    HTTP errors.
    """
    orchestrator = FlagOrchestrator(catalog, registry=registry, settings=settings, user_context=user)
    try:
        state = await orchestrator.run(record_id, object_type)
    finally:
        await orchestrator.close()

    logger.info(
        f"Computed {len(state.flags)} flag(s) for {object_type} {record_id}",
        extra={"record_id": record_id, "object_type": object_type, "run_id": state.run_id},
    )
    return state.to_payload()
