"""
WebSocket API for Real-time Snapshot Updates
Pushes a looper's snapshot to connected clients whenever a sync pass changes it.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Set

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from models.schemas import Snapshot
from services.looper_service import LooperNotFoundError, LooperRegistry, get_looper_registry
from services.sync_service import SyncError

logger = logging.getLogger(__name__)
router = APIRouter()


class ConnectionManager:
    """
    Tracks open snapshot WebSocket connections per looper.

    Each connection is fed by its own synchronizer subscription; the manager
    only keeps the bookkeeping used by /ws/status.
    """

    def __init__(self):
        # looper_id -> set of WebSocket connections
        self.active_connections: Dict[str, Set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, looper_id: str):
        """Accept and register a new WebSocket connection."""
        await websocket.accept()
        if looper_id not in self.active_connections:
            self.active_connections[looper_id] = set()
        self.active_connections[looper_id].add(websocket)
        logger.info(f"WebSocket connected for looper {looper_id}. Total connections: {len(self.active_connections[looper_id])}")

    def disconnect(self, websocket: WebSocket, looper_id: str):
        """Remove a WebSocket connection."""
        if looper_id in self.active_connections:
            self.active_connections[looper_id].discard(websocket)
            if not self.active_connections[looper_id]:
                del self.active_connections[looper_id]
        logger.info(f"WebSocket disconnected for looper {looper_id}")

    async def send(self, message: dict, websocket: WebSocket):
        """Send a message; a closed socket is logged, not raised."""
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.error(f"Error sending message: {e}")


# Global connection manager
manager = ConnectionManager()


def get_trend_arrow(trend: Optional[str]) -> str:
    """Convert a trend direction to an arrow symbol."""
    arrows = {
        "DoubleDown": "⇊", "SingleDown": "↓", "FortyFiveDown": "↘",
        "Flat": "→",
        "FortyFiveUp": "↗", "SingleUp": "↑", "DoubleUp": "⇈"
    }
    return arrows.get(trend or "", "")


def snapshot_message(snapshot: Snapshot) -> dict:
    """Build the snapshot_update message sent to clients."""
    current = snapshot.currentGlucose
    trend = current.trend.value if current and current.trend else None
    return {
        "type": "snapshot_update",
        "data": snapshot.model_dump(mode="json"),
        "trendArrow": get_trend_arrow(trend),
        "serverTime": datetime.now(timezone.utc).isoformat()
    }


@router.websocket("/ws/loopers/{looper_id}")
async def snapshot_websocket(
    websocket: WebSocket,
    looper_id: str,
    registry: LooperRegistry = Depends(get_looper_registry)
):
    """
    WebSocket endpoint for real-time snapshot updates.

    Messages sent:
    - snapshot_update: The full snapshot, after connect and after every changing sync
    - pong: Reply to ping
    - error: Error message

    Client can send:
    - {"type": "ping"}: Keep-alive
    - {"type": "refresh"}: Request an immediate sync
    """
    try:
        synchronizer = registry.get(looper_id).synchronizer
    except LooperNotFoundError:
        await websocket.close(code=4404)
        return

    await manager.connect(websocket, looper_id)

    async def on_update(old: Snapshot, new: Snapshot):
        await manager.send(snapshot_message(new), websocket)

    unsubscribe = synchronizer.subscribe(on_update)

    try:
        await manager.send(snapshot_message(synchronizer.current_snapshot()), websocket)

        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                continue

            msg_type = message.get("type", "")
            if msg_type == "ping":
                await manager.send(
                    {"type": "pong", "timestamp": datetime.now(timezone.utc).isoformat()},
                    websocket
                )
            elif msg_type == "refresh":
                try:
                    await synchronizer.synchronize()
                except SyncError as e:
                    await manager.send({"type": "error", "message": str(e)}, websocket)

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error for looper {looper_id}: {e}")
    finally:
        unsubscribe()
        manager.disconnect(websocket, looper_id)


@router.get("/ws/status")
async def websocket_status():
    """
    Get WebSocket connection status.

    Returns the number of active connections and loopers.
    """
    total_connections = sum(
        len(conns) for conns in manager.active_connections.values()
    )

    return {
        "activeLoopers": len(manager.active_connections),
        "totalConnections": total_connections,
        "status": "healthy"
    }
