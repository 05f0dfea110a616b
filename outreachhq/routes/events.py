"""
OutreachHQ Real-time Events (SSE)
Server-Sent Events for generation progress and campaign status changes
"""
from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from typing import Any, AsyncGenerator, Dict, Set
import asyncio
import json
from datetime import datetime, timezone
from dataclasses import dataclass
import uuid

router = APIRouter(prefix="/api/events", tags=["events"])


def campaign_topic(campaign_id: str) -> str:
    return f"campaign:{campaign_id}"


# ============================================================
# EVENT TYPES
# ============================================================

@dataclass
class Event:
    """Server-sent event structure"""
    type: str
    data: Dict
    id: str = ""
    timestamp: str = ""

    def __post_init__(self):
        if not self.id:
            self.id = f"evt_{uuid.uuid4().hex[:8]}"
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_sse(self) -> str:
        """Format as SSE message"""
        payload = {
            "type": self.type,
            "data": self.data,
            "timestamp": self.timestamp,
        }
        return f"id: {self.id}\nevent: {self.type}\ndata: {json.dumps(payload, default=str)}\n\n"


# ============================================================
# EVENT MANAGER (Pub/Sub)
# ============================================================

class EventManager:
    """Manages SSE connections and broadcasts"""

    def __init__(self):
        self._clients: Dict[str, asyncio.Queue] = {}
        self._topics: Dict[str, Set[str]] = {}  # topic -> client_ids

    async def connect(self, client_id: str, topics: list = None) -> asyncio.Queue:
        """Register a new client"""
        queue = asyncio.Queue()
        self._clients[client_id] = queue

        topics = topics or ["all"]
        for topic in topics:
            self._topics.setdefault(topic, set()).add(client_id)

        await queue.put(Event(
            type="connected",
            data={"client_id": client_id, "topics": topics}
        ))

        return queue

    async def disconnect(self, client_id: str):
        """Remove a client"""
        self._clients.pop(client_id, None)

        for topic, client_ids in list(self._topics.items()):
            client_ids.discard(client_id)
            if not client_ids:
                del self._topics[topic]

    async def broadcast(self, event: Event, topic: str = "all"):
        """Send event to all clients subscribed to topic"""
        client_ids = self._topics.get(topic, set()) | self._topics.get("all", set())

        for client_id in client_ids:
            if client_id in self._clients:
                await self._clients[client_id].put(event)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def topics(self) -> list:
        return list(self._topics.keys())


# Global event manager
event_manager = EventManager()


# ============================================================
# HELPER FUNCTIONS (wired into the engine at startup)
# ============================================================

async def emit_run_progress(campaign_id: str, progress: Dict[str, Any]):
    """Emit generation run progress (pending/succeeded/failed counts)"""
    await event_manager.broadcast(
        Event(
            type="run_progress",
            data={"campaign_id": campaign_id, **progress},
        ),
        topic=campaign_topic(campaign_id),
    )


async def emit_campaign_update(campaign_id: str, snapshot: Dict[str, Any]):
    """Emit a campaign status change"""
    await event_manager.broadcast(
        Event(
            type="campaign_update",
            data=snapshot,
        ),
        topic=campaign_topic(campaign_id),
    )


# ============================================================
# SSE ROUTES
# ============================================================

async def event_stream(request: Request, client_id: str, topics: list) -> AsyncGenerator:
    """Generator for SSE stream"""
    queue = await event_manager.connect(client_id, topics)

    try:
        while True:
            if await request.is_disconnected():
                break

            try:
                # Timeout doubles as the keepalive interval
                event = await asyncio.wait_for(queue.get(), timeout=30.0)
                yield event.to_sse()
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"

    finally:
        await event_manager.disconnect(client_id)


@router.get("/stream")
async def sse_stream(request: Request, topics: str = "all"):
    """
    SSE endpoint for real-time events.

    Query params:
    - topics: Comma-separated list of topics (``all`` or ``campaign:<id>``)

    Example:
    ```
    const source = new EventSource(`/api/events/stream?topics=campaign:${id}`);
    source.addEventListener('run_progress', (event) => {
        const payload = JSON.parse(event.data);
        console.log(payload.data.succeeded, payload.data.total);
    });
    ```
    """
    client_id = f"client_{uuid.uuid4().hex[:8]}"
    topic_list = [t.strip() for t in topics.split(",") if t.strip()]

    return StreamingResponse(
        event_stream(request, client_id, topic_list),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        }
    )


@router.get("/status")
async def events_status():
    """Get current event system status"""
    return {
        "ok": True,
        "connected_clients": event_manager.client_count,
        "topics": event_manager.topics,
    }
