"""
WebSocket API streaming record flag state to a record page
"""
import asyncio
from typing import Dict, Optional, Set

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from record_flags.api.routes.record_flags import get_catalog, get_registry
from record_flags.components.contracts import AggregateState, FailureNotice
from record_flags.core.config import Settings, get_settings
from record_flags.core.logging_config import LoggingConfig
from record_flags.core.permissions import UserContext, get_user_context
from record_flags.core.unit_registry import UnitRegistry
from record_flags.services.catalog_service import MetadataCatalog
from record_flags.services.flag_orchestrator import FlagOrchestrator

router = APIRouter(prefix="/api/ws", tags=["websocket"])
logger = LoggingConfig.get_logger(__name__)


class ConnectionManager:
    """Tracks open record flag streams per record"""

    def __init__(self):
        # Map record key -> Set[WebSocket]
        self.active_connections: Dict[str, Set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, record_key: str):
        await websocket.accept()
        self.active_connections.setdefault(record_key, set()).add(websocket)
        logger.info(
            f"WebSocket connected for record: {record_key}",
            extra={"record_key": record_key, "record_connections": self.connection_count(record_key)},
        )

    def disconnect(self, websocket: WebSocket, record_key: str):
        connections = self.active_connections.get(record_key)
        if connections is not None:
            connections.discard(websocket)
            if not connections:
                del self.active_connections[record_key]
        logger.info(
            f"WebSocket disconnected for record: {record_key}",
            extra={"record_key": record_key, "connections": self.connection_count()},
        )

    def connection_count(self, record_key: Optional[str] = None) -> int:
        if record_key is not None:
            return len(self.active_connections.get(record_key, ()))
        return sum(len(c) for c in self.active_connections.values())


manager = ConnectionManager()


async def _send_messages(websocket: WebSocket, queue: asyncio.Queue):
    while True:
        message = await queue.get()
        await websocket.send_json(message)


async def _refresh(orchestrator: FlagOrchestrator, queue: asyncio.Queue):
    await orchestrator.on_refresh()
    queue.put_nowait({"type": "refreshed", "data": {"run_id": orchestrator.run_id}})


@router.websocket("/record-flags/{object_type}/{record_id}")
async def record_flags_stream(
    websocket: WebSocket,
    object_type: str,
    record_id: str,
    catalog: MetadataCatalog = Depends(get_catalog),
    registry: UnitRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
    user: UserContext = Depends(get_user_context),
):
    """
    Stream AggregateState snapshots for one record

    Messages sent:
    - {"type": "state", "data": <aggregate state>}
    - {"type": "failure", "data": {"run_id", "unit_id", "reason", "category"}}
    - {"type": "refreshed", "data": {"run_id"}}

    Client messages:
    - {"action": "refresh"} re-runs the pipeline
    """
    record_key = f"{object_type}:{record_id}"
    await manager.connect(websocket, record_key)

    queue: asyncio.Queue = asyncio.Queue()
    orchestrator = FlagOrchestrator(catalog, registry=registry, settings=settings, user_context=user)

    def on_state(state: AggregateState):
        queue.put_nowait({"type": "state", "data": state.to_payload()})

    def on_failure(notice: FailureNotice):
        queue.put_nowait({
            "type": "failure",
            "data": {
                "run_id": notice.run_id,
                "unit_id": notice.unit_id,
                "reason": notice.reason,
                "category": notice.category,
            },
        })

    orchestrator.subscribe(on_state)
    orchestrator.subscribe_failures(on_failure)
    sender = asyncio.create_task(_send_messages(websocket, queue))
    refreshes: Set[asyncio.Task] = set()

    try:
        await orchestrator.start(record_id, object_type)
        while True:
            message = await websocket.receive_json()
            action = message.get("action") if isinstance(message, dict) else None
            if action == "refresh":
                task = asyncio.create_task(_refresh(orchestrator, queue))
                refreshes.add(task)
                task.add_done_callback(refreshes.discard)
            else:
                queue.put_nowait({"type": "error", "message": f"Unknown action: {action}"})
    except WebSocketDisconnect:
        logger.debug(f"Client closed record flag stream {record_key}")
    except Exception as e:
        logger.error(f"Record flag stream error: {e}", exc_info=True)
    finally:
        for task in list(refreshes):
            task.cancel()
        sender.cancel()
        await asyncio.gather(sender, *refreshes, return_exceptions=True)
        await orchestrator.close()
        manager.disconnect(websocket, record_key)
