"""Remote data source over a PostgREST-style RPC backend (httpx).

Reads and mutations call ``POST /rest/v1/rpc/<procedure>``; single rows
without a dedicated procedure are read with
``GET /rest/v1/<table>?<id_field>=eq.<id>``.

Usage:
    source = HttpRpcSource(settings, access_token=token)
    rows = await source.fetch_page("posts", limit=10, offset=0)
    await source.close()
"""

from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from feedsync.constants import (
    ACTION_COMMENT, ACTION_CREATE, ACTION_FAVORITE, ACTION_LIKE, ACTION_MARK_READ,
    ACTION_SHARE, KIND_CONVERSATIONS, KIND_LISTINGS, KIND_MEMBERS, KIND_POSTS,
)
from feedsync.core.config import Settings
from feedsync.core.exceptions import Conflict, NotAuthenticated, RemoteUnavailable, SyncError
from feedsync.core.logging import get_logger
from feedsync.services.remote import Record

logger = get_logger(__name__)


# ============================================================================
# Routes
# ============================================================================

class ActionRoute(BaseModel):
    """Maps one logical mutation onto a procedure call."""

    procedure: str
    id_arg: Optional[str] = None
    actor_arg: Optional[str] = None
    # payload key -> procedure argument
    payload_args: Dict[str, str] = Field(default_factory=dict)


class RpcRoute(BaseModel):
    """Maps logical reads and actions of one entity kind onto procedures."""

    page_procedure: str
    viewer_arg: Optional[str] = None
    limit_arg: Optional[str] = None
    offset_arg: Optional[str] = None
    # feed param -> procedure argument
    param_args: Dict[str, str] = Field(default_factory=dict)
    one_procedure: Optional[str] = None
    one_id_arg: Optional[str] = None
    table: Optional[str] = None
    id_field: str = "id"
    actions: Dict[str, ActionRoute] = Field(default_factory=dict)


DEFAULT_ROUTES: Dict[str, RpcRoute] = {
    KIND_POSTS: RpcRoute(
        page_procedure="get_home_feed",
        viewer_arg="p_current_user_id",
        limit_arg="p_limit_count",
        offset_arg="p_offset_count",
        table="posts",
        actions={
            ACTION_LIKE: ActionRoute(procedure="toggle_post_like", id_arg="p_post_id",
                                     actor_arg="p_user_id"),
            ACTION_SHARE: ActionRoute(procedure="share_post", id_arg="p_post_id",
                                      actor_arg="p_user_id"),
            ACTION_COMMENT: ActionRoute(procedure="add_comment", id_arg="p_post_id",
                                        actor_arg="p_author_id",
                                        payload_args={"content": "p_comment_content"}),
            ACTION_CREATE: ActionRoute(procedure="create_post", actor_arg="p_author_id",
                                       payload_args={"content": "p_post_content",
                                                     "media_urls": "p_media_urls",
                                                     "media_type": "p_media_type",
                                                     "tags": "p_tags"}),
        },
    ),
    KIND_CONVERSATIONS: RpcRoute(
        page_procedure="get_user_conversations",
        viewer_arg="p_user_id",
        param_args={"context": "p_context"},
        table="conversations",
        id_field="conversation_id",
        actions={
            ACTION_MARK_READ: ActionRoute(procedure="mark_messages_as_read",
                                          id_arg="p_conversation_id", actor_arg="p_user_id"),
        },
    ),
    KIND_MEMBERS: RpcRoute(
        page_procedure="get_member_directory",
        limit_arg="p_limit",
        offset_arg="p_offset",
        param_args={"search": "p_search", "business_type": "p_business_type",
                    "market_area": "p_market_area"},
        table="profiles",
    ),
    KIND_LISTINGS: RpcRoute(
        page_procedure="get_marketplace_listings",
        limit_arg="p_limit",
        offset_arg="p_offset",
        param_args={"category": "p_category", "search": "p_search",
                    "location": "p_location"},
        one_procedure="get_listing_by_id",
        one_id_arg="p_listing_id",
        table="marketplace_listings",
        actions={
            ACTION_FAVORITE: ActionRoute(procedure="toggle_listing_favorite",
                                         id_arg="p_listing_id"),
        },
    ),
}


def _first_row(data: Any) -> Optional[Record]:
    if isinstance(data, list):
        return data[0] if data else None
    if isinstance(data, dict):
        return data
    return None


# ============================================================================
# Source
# ============================================================================

class HttpRpcSource:
    """RemoteDataSource and MembershipDirectory over HTTP."""

    def __init__(self, settings: Settings, viewer_id: Optional[str] = None,
                 access_token: Optional[str] = None,
                 routes: Optional[Dict[str, RpcRoute]] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        if not settings.remote_url:
            raise ValueError("FEEDSYNC_REMOTE_URL is required for the RPC source")

        self.settings = settings
        self.viewer_id = viewer_id
        self.routes = dict(routes or DEFAULT_ROUTES)
        self.client = httpx.AsyncClient(
            base_url=settings.remote_url.rstrip("/"),
            timeout=settings.remote_timeout,
            transport=transport,
        )
        self.set_access_token(access_token)

    def set_access_token(self, access_token: Optional[str]) -> None:
        headers = {}
        if self.settings.remote_api_key:
            headers["apikey"] = self.settings.remote_api_key
        bearer = access_token or self.settings.remote_api_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        self.client.headers.update(headers)

    def route(self, kind: str) -> RpcRoute:
        try:
            return self.routes[kind]
        except KeyError:
            raise ValueError(f"No RPC route for entity kind: {kind}") from None

    async def close(self) -> None:
        await self.client.aclose()

    # ============================================================================
    # Transport
    # ============================================================================

    async def _request(self, method: str, path: str, operation: str, **kwargs) -> Any:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("RPC request timed out", operation=operation, path=path)
            raise RemoteUnavailable(operation, "request timed out") from e
        except httpx.HTTPError as e:
            logger.warning("RPC transport error", operation=operation, path=path, error=str(e))
            raise RemoteUnavailable(operation, str(e)) from e

        status = response.status_code
        if status >= 500:
            raise RemoteUnavailable(operation, f"HTTP {status}: {response.text[:200]}")
        if status in (401, 403):
            raise NotAuthenticated(f"[{operation}] HTTP {status}")
        if status in (404, 409):
            raise Conflict(None, f"[{operation}] HTTP {status}: {response.text[:200]}")
        if status >= 400:
            raise SyncError(f"[{operation}] HTTP {status}: {response.text[:200]}")

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise RemoteUnavailable(operation, f"invalid JSON response: {e}") from e

    async def call(self, procedure: str, args: Dict[str, Any]) -> Any:
        """Invoke one backend procedure."""
        return await self._request("POST", f"/rest/v1/rpc/{procedure}", procedure, json=args)

    # ============================================================================
    # RemoteDataSource
    # ============================================================================

    async def fetch_page(self, kind: str, limit: int, offset: int,
                         params: Optional[Dict[str, Any]] = None) -> List[Record]:
        route = self.route(kind)
        args: Dict[str, Any] = {}
        if route.viewer_arg:
            args[route.viewer_arg] = self.viewer_id
        for name, arg in route.param_args.items():
            args[arg] = (params or {}).get(name)
        if route.limit_arg:
            args[route.limit_arg] = limit
        if route.offset_arg:
            args[route.offset_arg] = offset

        data = await self.call(route.page_procedure, args)
        rows = data if isinstance(data, list) else []

        # Procedures without paging arguments return the full collection
        if not route.limit_arg:
            rows = rows[offset:offset + limit]
        return rows

    async def fetch_one(self, kind: str, entity_id: str) -> Optional[Record]:
        route = self.route(kind)
        try:
            if route.one_procedure:
                data = await self.call(route.one_procedure, {route.one_id_arg or "p_id": entity_id})
            elif route.table:
                data = await self._request(
                    "GET", f"/rest/v1/{route.table}", "fetch_one",
                    params={route.id_field: f"eq.{entity_id}", "select": "*"},
                )
            else:
                raise ValueError(f"No single-row read for entity kind: {kind}")
        except Conflict:
            return None
        return _first_row(data)

    async def mutate(self, kind: str, entity_id: str, action: str, actor_id: str,
                     payload: Optional[Dict[str, Any]] = None) -> Record:
        route = self.route(kind)
        action_route = route.actions.get(action)
        if action_route is None:
            raise ValueError(f"No procedure for action {action!r} on {kind}")

        args: Dict[str, Any] = {}
        if action_route.id_arg:
            args[action_route.id_arg] = entity_id
        if action_route.actor_arg:
            args[action_route.actor_arg] = actor_id
        for name, arg in action_route.payload_args.items():
            if payload and name in payload:
                args[arg] = payload[name]

        data = await self.call(action_route.procedure, args)
        return _first_row(data) or {}

    # ============================================================================
    # MembershipDirectory
    # ============================================================================

    async def get_user_status(self, user_id: str) -> Optional[str]:
        try:
            data = await self._request(
                "GET", "/rest/v1/profiles", "get_user_status",
                params={"id": f"eq.{user_id}", "select": "user_status"},
            )
        except Conflict:
            return None
        row = _first_row(data)
        return row.get("user_status") if row else None

    async def is_connected(self, viewer_id: str, user_id: str) -> bool:
        either_way = (
            f"(and(user_id.eq.{viewer_id},connected_user_id.eq.{user_id}),"
            f"and(user_id.eq.{user_id},connected_user_id.eq.{viewer_id}))"
        )
        data = await self._request(
            "GET", "/rest/v1/connections", "is_connected",
            params={"or": either_way, "status": "eq.accepted", "select": "id"},
        )
        return bool(_first_row(data))
