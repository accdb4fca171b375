"""Realtime reconciliation of slot changes.

Change events arrive one at a time (from the MongoDB change stream, or
echoed locally after a write) and are merged into the ``TableStateStore``.
The reconciler also decides which events deserve a user-facing alert and
pushes board snapshots to websocket clients.
"""
from __future__ import annotations
import logging
import time
from typing import Any, Callable, Dict, List, Literal, Optional

from fastapi import WebSocket
from pydantic import BaseModel, ValidationError

import config
from schemas import ChangeEvent, Order, parse_table
from slots import channel_for
from store import TableStateStore

logger = logging.getLogger(__name__)

STATUS_LABELS: Dict[str, str] = {
    "pending": "Pendente",
    "preparing": "Preparando",
    "ready": "Pronto",
    "delivered": "Entregue",
}


class Alert(BaseModel):
    kind: Literal["new_order", "status_changed"]
    order_id: str
    table_id: int
    status: str
    message: str
    created_at: float
    expires_at: float
    play_sound: bool = False


def slot_label(table_id: int) -> str:
    channel = channel_for(table_id)
    if channel == "delivery":
        return "Entrega"
    if channel == "counter":
        return "Balcão"
    return f"Mesa {table_id}"


class RealtimeReconciler:
    """Merges change events into a store and tracks alert state.

    The last notified order id/status live on the instance, so every
    session (or test) gets its own dedup state.
    """

    def __init__(self, store: TableStateStore,
                 new_order_seconds: float = config.NEW_ORDER_ALERT_SECONDS,
                 status_seconds: float = config.STATUS_ALERT_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.new_order_seconds = new_order_seconds
        self.status_seconds = status_seconds
        self.clock = clock
        self.last_notified_order_id: Optional[str] = None
        self.last_notified_status: Optional[str] = None
        self.audio_enabled = True
        self.audio_unlocked = False
        self._alert: Optional[Alert] = None

    # audio playback needs one user interaction first (browser autoplay rules)
    def unlock_audio(self) -> None:
        self.audio_unlocked = True

    def handle(self, event: ChangeEvent) -> Optional[Alert]:
        table_id = event.table_id
        if table_id is None:
            logger.warning("Ignoring %s event without a table id", event.event_type)
            return None

        if event.event_type == "delete":
            self.store.apply_change("delete", table_id)
            return None

        try:
            table = parse_table(event.new or {})
        except ValidationError as e:
            logger.warning("Ignoring malformed %s for table %s: %s", event.event_type, table_id, e)
            return None

        self.store.apply_change(event.event_type, table.id, table)
        if table.current_order is None:
            return None
        return self.notify(table.current_order)

    def notify(self, order: Order) -> Optional[Alert]:
        if order.id != self.last_notified_order_id:
            self.last_notified_order_id = order.id
            self.last_notified_status = order.status
            return self._raise_alert(
                "new_order", order,
                f"Novo pedido {order.id} - {slot_label(order.table_id)} ({order.customer_name})",
                self.new_order_seconds,
            )
        if order.status != self.last_notified_status:
            self.last_notified_status = order.status
            return self._raise_alert(
                "status_changed", order,
                f"Pedido {order.id}: {STATUS_LABELS.get(order.status, order.status)}",
                self.status_seconds,
            )
        return None

    def _raise_alert(self, kind: str, order: Order, message: str, window: float) -> Alert:
        now = self.clock()
        self._alert = Alert(
            kind=kind,
            order_id=order.id,
            table_id=order.table_id,
            status=order.status,
            message=message,
            created_at=now,
            expires_at=now + window,
            play_sound=self.audio_enabled and self.audio_unlocked,
        )
        logger.info("Alert %s: %s", kind, message)
        return self._alert

    def current_alert(self) -> Optional[Alert]:
        if self._alert is not None and self.clock() >= self._alert.expires_at:
            self._alert = None
        return self._alert

    def dismiss(self) -> None:
        self._alert = None


class ConnectionManager:
    """Websocket clients watching the table board."""

    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.debug("Board websocket connected (%d open)", len(self.active_connections))

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        logger.debug("Board websocket disconnected (%d open)", len(self.active_connections))

    async def broadcast(self, message: Dict[str, Any]) -> None:
        disconnected = []
        for connection in self.active_connections:
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.debug(f"WebSocket send failed: {e}")
                disconnected.append(connection)

        for conn in disconnected:
            self.disconnect(conn)


async def dispatch(event: ChangeEvent, reconciler: RealtimeReconciler, manager: ConnectionManager) -> Optional[Alert]:
    """Apply one event and fan the new board (and any alert) out."""
    alert = reconciler.handle(event)
    await manager.broadcast({"type": "board", "board": reconciler.store.board()})
    if alert is not None:
        await manager.broadcast({"type": "alert", "alert": alert.model_dump()})
    return alert
