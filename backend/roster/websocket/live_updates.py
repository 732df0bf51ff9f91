"""
WebSocket fan-out of roster change events.
"""
import json
import logging
from datetime import date, datetime, timezone
from typing import Callable, Dict, Set

from fastapi import WebSocket, WebSocketDisconnect

from roster.schemas.roster import RosterChangeEvent
from roster.services.change_feed import ChangeFeed, Subscription

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages WebSocket connections watching a roster day."""

    def __init__(self, feed: ChangeFeed, today: Callable[[], date]):
        self.feed = feed
        self.today = today
        # roster_date -> connected sockets
        self.active_connections: Dict[date, Set[WebSocket]] = {}
        # WebSocket -> roster_date for cleanup
        self.connection_date_map: Dict[WebSocket, date] = {}
        self._subscriptions: Dict[date, Subscription] = {}

    async def connect(self, websocket: WebSocket) -> date:
        await websocket.accept()
        await self.refresh()
        roster_date = await self._attach(websocket, self.today())

        await self._send_to_websocket(websocket, {
            "type": "connection_confirmed",
            "roster_date": roster_date.isoformat(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        return roster_date

    async def _attach(self, websocket: WebSocket, roster_date: date) -> date:
        if roster_date not in self.active_connections:
            self.active_connections[roster_date] = set()
            self._subscriptions[roster_date] = await self.feed.subscribe(
                roster_date,
                self.broadcast,
            )

        self.active_connections[roster_date].add(websocket)
        self.connection_date_map[websocket] = roster_date
        return roster_date

    async def refresh(self) -> None:
        """Move sockets still watching a past roster day onto today's."""
        today = self.today()
        stale = [ws for ws, roster_date in self.connection_date_map.items() if roster_date != today]
        for websocket in stale:
            self.disconnect(websocket)
            await self._attach(websocket, today)
            try:
                await self._send_to_websocket(websocket, {
                    "type": "roster_date_changed",
                    "roster_date": today.isoformat(),
                })
            except Exception as e:
                logger.warning(f"Dropping roster websocket after send failure: {e}")
                self.disconnect(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        roster_date = self.connection_date_map.pop(websocket, None)
        if roster_date is None:
            return

        sockets = self.active_connections.get(roster_date)
        if sockets is not None:
            sockets.discard(websocket)
            if not sockets:
                del self.active_connections[roster_date]
                subscription = self._subscriptions.pop(roster_date, None)
                if subscription is not None:
                    subscription.unsubscribe()

    async def broadcast(self, event: RosterChangeEvent) -> None:
        connections = self.active_connections.get(event.roster_date, set()).copy()
        message = {"type": "roster_change", "data": event.model_dump(mode="json")}

        failed_connections = []
        for websocket in connections:
            try:
                await self._send_to_websocket(websocket, message)
            except Exception as e:
                logger.warning(f"Dropping roster websocket after send failure: {e}")
                failed_connections.append(websocket)

        for websocket in failed_connections:
            self.disconnect(websocket)

    async def _send_to_websocket(self, websocket: WebSocket, message: dict) -> None:
        await websocket.send_text(json.dumps(message))

    def get_active_connections_count(self, roster_date: date) -> int:
        return len(self.active_connections.get(roster_date, set()))

    async def websocket_endpoint(self, websocket: WebSocket) -> None:
        await self.connect(websocket)
        try:
            while True:
                # Clients only listen; inbound frames are keepalives
                await websocket.receive_text()
                await self.refresh()
        except WebSocketDisconnect:
            pass
        finally:
            self.disconnect(websocket)
