"""Firestore REST client for class wall and attendance documents."""

import logging
import re
from typing import Any, Callable, Optional, Sequence

import httpx

from .adapter import PushChannel, SnapshotCallback, Subscription, auto_id
from .config import Settings
from .exceptions import ClassWallError, TransientNetworkError, raise_for_result
from .models import AuthContext, Document, FieldFilter, Precondition, PushResult, ResultKind
from .parsers import document_from_json, encode_fields, encode_value

logger = logging.getLogger(__name__)

_SIMPLE_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z_0-9]*$")

_QUERY_OPS = {"==": "EQUAL", "in": "IN"}

_PERMISSION_STATUSES = {"PERMISSION_DENIED", "UNAUTHENTICATED"}
_CONFLICT_STATUSES = {"FAILED_PRECONDITION", "ABORTED", "ALREADY_EXISTS"}
_TRANSIENT_STATUSES = {"UNAVAILABLE", "DEADLINE_EXCEEDED", "RESOURCE_EXHAUSTED", "INTERNAL", "UNKNOWN"}


def quote_field_path(path: str) -> str:
    """Quote the segments of a dotted field path that are not plain identifiers."""
    segments = []
    for segment in path.split("."):
        if _SIMPLE_FIELD_RE.match(segment):
            segments.append(segment)
        else:
            escaped = segment.replace("\\", "\\\\").replace("`", "\\`")
            segments.append(f"`{escaped}`")
    return ".".join(segments)


def _result_kind(status_code: int, status: str) -> ResultKind:
    if status in _PERMISSION_STATUSES or status_code in (401, 403):
        return ResultKind.PERMISSION_DENIED
    if status == "NOT_FOUND" or status_code == 404:
        return ResultKind.NOT_FOUND
    if status in _CONFLICT_STATUSES or status_code == 409:
        return ResultKind.CONFLICT
    if status in _TRANSIENT_STATUSES or status_code == 429 or status_code >= 500:
        return ResultKind.TRANSIENT
    # Remaining 4xx responses are rejections that retrying will not fix
    return ResultKind.PERMISSION_DENIED


def result_from_response(response: httpx.Response) -> PushResult:
    """Map an HTTP response to a PushResult."""
    if response.is_success:
        return PushResult.success()

    status = ""
    message = response.text
    try:
        error = response.json().get("error", {})
        status = error.get("status", "")
        message = error.get("message", message)
    except (ValueError, AttributeError):
        pass

    return PushResult(_result_kind(response.status_code, status), message)


class FirestoreClient:
    """HTTP client for the Firestore REST API.

    Live snapshots are not available over plain REST, so ``subscribe``
    delegates to the injected PushChannel.
    """

    def __init__(
        self,
        project_id: str,
        id_token: Optional[str] = None,
        *,
        base_url: str = "https://firestore.googleapis.com/v1",
        database: str = "(default)",
        api_key: Optional[str] = None,
        feed_collection: str = "feedItems",
        channel: Optional[PushChannel] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the Firestore client.

        Args:
            project_id: Firebase project id
            id_token: ID token of the signed-in user, sent as a bearer token
            base_url: REST endpoint (override for the emulator)
            database: Database id
            api_key: Optional web API key
            feed_collection: Collection holding class wall posts
            channel: Push transport used by subscribe()
            timeout: HTTP timeout in seconds
            transport: Custom httpx transport, mainly for tests
        """
        self.base_url = base_url.rstrip("/")
        self.project_id = project_id
        self.database = database
        self.feed_collection = feed_collection
        self._id_token = id_token
        self._api_key = api_key
        self._channel = channel
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._root = f"projects/{project_id}/databases/{database}/documents"

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        auth: AuthContext,
        *,
        channel: Optional[PushChannel] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "FirestoreClient":
        return cls(
            settings.project_id,
            auth.id_token,
            base_url=settings.base_url,
            database=settings.database,
            api_key=settings.api_key,
            feed_collection=settings.feed_collection,
            channel=channel,
            timeout=settings.request_timeout,
            transport=transport,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            headers = {
                "User-Agent": "classwall-sync/0.1.0",
                "Accept": "application/json",
            }
            if self._id_token:
                headers["Authorization"] = f"Bearer {self._id_token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self._timeout,
                headers=headers,
                params={"key": self._api_key} if self._api_key else None,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _name(self, path: str) -> str:
        return f"{self._root}/{path.strip('/')}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request to Firestore.

        Raises:
            TransientNetworkError: If the request could not be completed
        """
        client = await self._get_client()
        try:
            return await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise TransientNetworkError(f"Request to {path} failed: {e}")

    async def _commit(self, writes: list[dict], document_id: Optional[str] = None) -> PushResult:
        """Apply writes atomically. Never raises for remote errors."""
        try:
            response = await self._request("POST", f"{self._root}:commit", json={"writes": writes})
        except TransientNetworkError as e:
            return PushResult(ResultKind.TRANSIENT, e.message)

        result = result_from_response(response)
        if not result.ok:
            logger.warning("Commit of %d write(s) failed: %s %s", len(writes), result.kind.value, result.message)
            return result
        return PushResult.success(document_id)

    # Feed mutations

    async def create_item(self, fields: dict[str, Any], document_id: Optional[str] = None) -> PushResult:
        doc_id = document_id or auto_id()
        write = {
            "update": {"name": self._name(f"{self.feed_collection}/{doc_id}"), "fields": encode_fields(fields)},
            "updateTransforms": [{"fieldPath": "createdAt", "setToServerValue": "REQUEST_TIME"}],
            "currentDocument": {"exists": False},
        }
        return await self._commit([write], doc_id)

    async def toggle_like(self, item_id: str, user_id: str, delta: int) -> PushResult:
        array_op = "appendMissingElements" if delta > 0 else "removeAllFromArray"
        write = {
            "update": {"name": self._name(f"{self.feed_collection}/{item_id}"), "fields": {}},
            "updateMask": {"fieldPaths": []},
            "updateTransforms": [
                {"fieldPath": "likes", "increment": encode_value(int(delta))},
                {"fieldPath": "likedBy", array_op: {"values": [encode_value(user_id)]}},
            ],
            "currentDocument": {"exists": True},
        }
        return await self._commit([write], item_id)

    async def add_comment(
        self, item_id: str, fields: dict[str, Any], comment_id: Optional[str] = None
    ) -> PushResult:
        comment_id = comment_id or auto_id()
        parent = f"{self.feed_collection}/{item_id}"
        writes = [
            {
                "update": {"name": self._name(f"{parent}/comments/{comment_id}"), "fields": encode_fields(fields)},
                "updateTransforms": [{"fieldPath": "createdAt", "setToServerValue": "REQUEST_TIME"}],
                "currentDocument": {"exists": False},
            },
            {
                "update": {"name": self._name(parent), "fields": {}},
                "updateMask": {"fieldPaths": []},
                "updateTransforms": [{"fieldPath": "comments", "increment": encode_value(1)}],
                "currentDocument": {"exists": True},
            },
        ]
        return await self._commit(writes, comment_id)

    async def update_item(self, item_id: str, fields: dict[str, Any]) -> PushResult:
        write = {
            "update": {"name": self._name(f"{self.feed_collection}/{item_id}"), "fields": encode_fields(fields)},
            "updateMask": {"fieldPaths": [quote_field_path(key) for key in fields]},
            "updateTransforms": [{"fieldPath": "updatedAt", "setToServerValue": "REQUEST_TIME"}],
            "currentDocument": {"exists": True},
        }
        return await self._commit([write], item_id)

    async def delete_item(self, item_id: str) -> PushResult:
        write = {
            "delete": self._name(f"{self.feed_collection}/{item_id}"),
            "currentDocument": {"exists": True},
        }
        return await self._commit([write], item_id)

    def subscribe(self, collection: str, on_snapshot: SnapshotCallback) -> Subscription:
        if self._channel is None:
            raise RuntimeError("FirestoreClient has no push channel configured")

        closers: list[Callable[[], None]] = []

        def close_channel(_subscription: Subscription) -> None:
            for close in closers:
                close()

        subscription = Subscription(collection, on_snapshot, close_channel)
        epoch = subscription.epoch

        def deliver(resources: list[dict]) -> None:
            subscription.deliver([document_from_json(r) for r in resources], epoch)

        closers.append(self._channel.open(collection, deliver))
        return subscription

    # Generic documents

    async def get_document(self, path: str) -> Optional[Document]:
        """Fetch a document.

        Returns:
            The document, or None if it does not exist
        """
        response = await self._request("GET", self._name(path))
        result = result_from_response(response)
        if result.kind == ResultKind.NOT_FOUND:
            return None
        raise_for_result(result)
        return document_from_json(response.json())

    async def set_document(
        self,
        path: str,
        fields: dict[str, Any],
        *,
        server_timestamps: Sequence[str] = (),
        precondition: Optional[Precondition] = None,
    ) -> PushResult:
        write: dict[str, Any] = {"update": {"name": self._name(path), "fields": encode_fields(fields)}}
        if server_timestamps:
            write["updateTransforms"] = [
                {"fieldPath": quote_field_path(field), "setToServerValue": "REQUEST_TIME"}
                for field in server_timestamps
            ]
        if precondition is not None:
            if precondition.version is not None:
                write["currentDocument"] = {"updateTime": precondition.version}
            elif precondition.exists is not None:
                write["currentDocument"] = {"exists": precondition.exists}
        return await self._commit([write], path.rsplit("/", 1)[-1])

    async def delete_document(self, path: str) -> PushResult:
        return await self._commit([{"delete": self._name(path)}], path.rsplit("/", 1)[-1])

    async def query(self, collection: str, filters: Sequence[FieldFilter]) -> list[Document]:
        """Run a structured query over one collection.

        Raises:
            ValueError: If a filter uses an unsupported operator
        """
        parent, _, collection_id = collection.strip("/").rpartition("/")
        parent_name = self._name(parent) if parent else self._root

        conditions = []
        for f in filters:
            if f.op not in _QUERY_OPS:
                raise ValueError(f"Unsupported query operator: {f.op}")
            value = list(f.value) if f.op == "in" else f.value
            conditions.append({
                "fieldFilter": {
                    "field": {"fieldPath": quote_field_path(f.field)},
                    "op": _QUERY_OPS[f.op],
                    "value": encode_value(value),
                }
            })

        structured: dict[str, Any] = {"from": [{"collectionId": collection_id}]}
        if len(conditions) == 1:
            structured["where"] = conditions[0]
        elif conditions:
            structured["where"] = {"compositeFilter": {"op": "AND", "filters": conditions}}

        response = await self._request("POST", f"{parent_name}:runQuery", json={"structuredQuery": structured})
        raise_for_result(result_from_response(response))

        try:
            rows = response.json()
        except ValueError:
            raise ClassWallError("Failed to parse query response")
        return [document_from_json(row["document"]) for row in rows if "document" in row]
