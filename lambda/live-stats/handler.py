"""
Live Stats Lambda

Records page views and heartbeat-tracked sessions in container memory and
serves a live summary for the site footer widget.

Routes (suffix after PATH_PREFIX):
    POST /pageview   - Record a page view and upsert the session
    POST /heartbeat  - Refresh an existing session
    POST /offline    - Drop a session
    GET  /current    - Online users, today's views, total views, top pages

Also accepts EventBridge scheduled events, which force a stale-session sweep.

State is per container: concurrent containers do not share sessions or views.
"""

import base64
import json
import logging
import os
import time
from collections import defaultdict
from collections.abc import Hashable
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

# Configure logging
log_level = os.environ.get("LOG_LEVEL", "INFO")
logging.basicConfig(level=log_level)
logger = logging.getLogger(__name__)

HANDLER_NAME = "live-stats"

# Environment variables
ENV = os.environ.get("ENV", "dev")
PATH_PREFIX = os.environ.get("PATH_PREFIX", "/.netlify/functions/stats")
MAX_PAGE_VIEWS = int(os.environ.get("MAX_PAGE_VIEWS", "1000"))
SESSION_TIMEOUT_SECONDS = int(os.environ.get("SESSION_TIMEOUT_SECONDS", "300"))
CLEANUP_INTERVAL_SECONDS = int(os.environ.get("CLEANUP_INTERVAL_SECONDS", "60"))
POPULAR_PAGES_LIMIT = int(os.environ.get("POPULAR_PAGES_LIMIT", "10"))

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Content-Type": "application/json",
}


def _now_ms() -> int:
    return int(time.time() * 1000)


def _iso_now() -> str:
    """UTC timestamp with millisecond precision, e.g. 2024-01-15T12:00:00.000Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _local_date(timestamp: str):
    """Calendar date of an ISO timestamp in server-local time."""
    return datetime.fromisoformat(timestamp.replace("Z", "+00:00")).astimezone().date()


def _key(value: Any) -> Any:
    """Dict key for a client-supplied value; JSON objects and arrays become their JSON text."""
    if isinstance(value, Hashable):
        return value
    return json.dumps(value, sort_keys=True)


class StatsStore:
    """
    In-memory session table and page view log.

    One instance lives for the lifetime of a Lambda container. Sessions are
    keyed by the client-supplied sessionId; page views are kept in arrival
    order and capped at max_page_views.
    """

    def __init__(
        self,
        max_page_views: int = MAX_PAGE_VIEWS,
        session_timeout_seconds: int = SESSION_TIMEOUT_SECONDS,
        cleanup_interval_seconds: int = CLEANUP_INTERVAL_SECONDS,
    ):
        self.max_page_views = max_page_views
        self.session_timeout_ms = session_timeout_seconds * 1000
        self.cleanup_interval_ms = cleanup_interval_seconds * 1000
        self.sessions: Dict[Any, Dict] = {}
        self.page_views: List[Dict] = []
        self.last_cleanup = _now_ms()

    def cleanup(self) -> int:
        """Remove sessions with no heartbeat inside the timeout. Returns the number removed."""
        now = _now_ms()
        cutoff = now - self.session_timeout_ms

        stale = [sid for sid, session in self.sessions.items() if session["lastHeartbeat"] < cutoff]
        for sid in stale:
            del self.sessions[sid]

        self.last_cleanup = now

        if stale:
            logger.info(f"{HANDLER_NAME}: Swept {len(stale)} stale sessions, {len(self.sessions)} online")
        return len(stale)

    def cleanup_if_due(self) -> bool:
        """Run cleanup when more than cleanup_interval has passed since the last one."""
        if _now_ms() - self.last_cleanup > self.cleanup_interval_ms:
            self.cleanup()
            return True
        return False

    def record_page_view(self, data: Dict) -> None:
        # Build both records before mutating either structure
        view = {**data, "timestamp": _iso_now()}
        session_id = data.get("sessionId")
        key = _key(session_id)
        if session_id is None:
            logger.warning(f"{HANDLER_NAME}: Page view without sessionId for page {data.get('page')}")

        now = _now_ms()
        existing = self.sessions.get(key)
        self.sessions[key] = {
            "sessionId": session_id,
            "firstSeen": existing["firstSeen"] if existing else now,
            "lastHeartbeat": now,
            "currentPage": data.get("page"),
        }

        self.page_views.append(view)

        # Keep only the most recent views
        if len(self.page_views) > self.max_page_views:
            self.page_views = self.page_views[-self.max_page_views:]

    def heartbeat(self, session_id: Any) -> bool:
        """Refresh lastHeartbeat for a known session. Returns False for unknown ids."""
        session = self.sessions.get(_key(session_id))
        if session is None:
            return False
        session["lastHeartbeat"] = _now_ms()
        return True

    def remove_session(self, session_id: Any) -> bool:
        return self.sessions.pop(_key(session_id), None) is not None

    def summary(self) -> Dict:
        """Compute online users, view counts and today's most popular pages."""
        today = datetime.now(timezone.utc).astimezone().date()
        today_views = [v for v in self.page_views if _local_date(v["timestamp"]) == today]

        # dict preserves first-seen order, which breaks ties in the stable sort
        page_counts: Dict[Any, int] = defaultdict(int)
        for view in today_views:
            page_counts[_key(view.get("page"))] += 1

        sorted_pages = sorted(page_counts.items(), key=lambda x: x[1], reverse=True)[:POPULAR_PAGES_LIMIT]

        return {
            "onlineUsers": len(self.sessions),
            "todayViews": len(today_views),
            "totalViews": len(self.page_views),
            "popularPages": [{"page": page, "count": count} for page, count in sorted_pages],
            "timestamp": _iso_now(),
        }


# Cached store (container reuse)
_store = None


def _get_store() -> StatsStore:
    global _store
    if _store is None:
        _store = StatsStore()
    return _store


def _response(status_code: int, body: Any) -> Dict:
    """Return standardized API response with CORS headers."""
    return {
        "statusCode": status_code,
        "headers": dict(CORS_HEADERS),
        "body": body if isinstance(body, str) else json.dumps(body),
    }


def _error(status_code: int, message: str) -> Dict:
    return _response(status_code, {"error": message})


def _get_method(event: Dict) -> str:
    """HTTP method from an API Gateway v2 or v1/Netlify event."""
    return event.get("requestContext", {}).get("http", {}).get("method") or event.get("httpMethod", "")


def _get_route_path(event: Dict) -> str:
    """Request path with PATH_PREFIX removed."""
    path = event.get("rawPath") or event.get("path") or ""
    if PATH_PREFIX and path.startswith(PATH_PREFIX):
        path = path[len(PATH_PREFIX):]
    return path


def _parse_body(event: Dict) -> Dict:
    """Decode the JSON request body. Raises on a missing or malformed body."""
    body_str = event.get("body")
    if event.get("isBase64Encoded") and body_str:
        body_str = base64.b64decode(body_str).decode("utf-8")
    return json.loads(body_str)


def handle_pageview(event: Dict, store: StatsStore) -> Dict:
    """POST /pageview - Record a page view."""
    data = _parse_body(event)
    store.record_page_view(data)
    return _response(200, {"success": True, "message": "Page view recorded"})


def handle_heartbeat(event: Dict, store: StatsStore) -> Dict:
    """POST /heartbeat - Refresh session, no-op for unknown sessions."""
    data = _parse_body(event)
    if not store.heartbeat(data.get("sessionId")):
        logger.debug(f"{HANDLER_NAME}: Heartbeat for unknown session {data.get('sessionId')}")
    return _response(200, {"success": True, "message": "Heartbeat received"})


def handle_offline(event: Dict, store: StatsStore) -> Dict:
    """POST /offline - Remove session."""
    data = _parse_body(event)
    if store.remove_session(data.get("sessionId")):
        logger.debug(f"{HANDLER_NAME}: Session {data.get('sessionId')} went offline")
    return _response(200, {"success": True, "message": "User offline"})


def handle_current(event: Dict, store: StatsStore) -> Dict:
    """GET /current - Live summary."""
    return _response(200, store.summary())


ROUTES: Dict[str, Callable[[Dict, StatsStore], Dict]] = {
    "POST /pageview": handle_pageview,
    "POST /heartbeat": handle_heartbeat,
    "POST /offline": handle_offline,
    "GET /current": handle_current,
}


def handle_scheduled_sweep(store: StatsStore) -> Dict:
    """EventBridge schedule - sweep regardless of the lazy interval."""
    removed = store.cleanup()
    return {
        "statusCode": 200,
        "body": json.dumps({
            "message": "Sweep complete",
            "removed": removed,
            "onlineUsers": len(store.sessions),
        }),
    }


def lambda_handler(event: Dict, context: Any, store: StatsStore | None = None) -> Dict:
    """Main Lambda handler - routes requests to appropriate handlers."""
    logger.info(f"{HANDLER_NAME} ({ENV}): Received event: {json.dumps(event, default=str)}")

    if store is None:
        store = _get_store()

    if event.get("source") == "aws.events":
        return handle_scheduled_sweep(store)

    method = _get_method(event)

    # Handle CORS preflight
    if method == "OPTIONS":
        return _response(200, "")

    store.cleanup_if_due()

    route_key = f"{method} {_get_route_path(event)}"

    handler = ROUTES.get(route_key)
    if handler:
        try:
            return handler(event, store)
        except Exception:
            logger.exception(f"{HANDLER_NAME}: Error handling {route_key}")
            return _error(500, "Internal server error")

    return _error(404, "Not found")
