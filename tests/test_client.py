import json

import httpx
import pytest

from classwall_sync.client import FirestoreClient, quote_field_path
from classwall_sync.exceptions import PermissionDeniedError
from classwall_sync.models import FieldFilter, Precondition, ResultKind

ROOT = "projects/demo/databases/(default)/documents"


class Recorder:
    """httpx handler that records requests and replays canned responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        response = self.responses.pop(0) if self.responses else httpx.Response(200, json={})
        if isinstance(response, Exception):
            raise response
        return response

    def body(self, index=-1):
        return json.loads(self.requests[index].content)


def make_client(recorder, **kwargs):
    return FirestoreClient("demo", "token-123", transport=httpx.MockTransport(recorder), **kwargs)


def error(status_code, status, message="boom"):
    return httpx.Response(status_code, json={"error": {"code": status_code, "status": status, "message": message}})


@pytest.mark.asyncio
async def test_create_item_commits_with_server_timestamp():
    recorder = Recorder()
    client = make_client(recorder, api_key="k")

    result = await client.create_item({"authorId": "u1", "message": "hi", "likes": 0}, document_id="abc")

    assert result.ok
    assert result.document_id == "abc"
    request = recorder.requests[0]
    assert request.url.path.endswith("/documents:commit")
    assert request.url.params["key"] == "k"
    assert request.headers["Authorization"] == "Bearer token-123"

    [write] = recorder.body()["writes"]
    assert write["update"]["name"] == f"{ROOT}/feedItems/abc"
    assert write["update"]["fields"]["likes"] == {"integerValue": "0"}
    assert write["updateTransforms"] == [{"fieldPath": "createdAt", "setToServerValue": "REQUEST_TIME"}]
    assert write["currentDocument"] == {"exists": False}
    await client.close()


@pytest.mark.asyncio
async def test_create_item_generates_an_id():
    recorder = Recorder()
    client = make_client(recorder)

    result = await client.create_item({"message": "hi"})

    assert len(result.document_id) == 20
    assert recorder.body()["writes"][0]["update"]["name"].endswith(result.document_id)


@pytest.mark.asyncio
async def test_unlike_uses_array_remove_and_negative_increment():
    recorder = Recorder()
    client = make_client(recorder)

    await client.toggle_like("x", "u1", -1)

    [write] = recorder.body()["writes"]
    assert write["updateMask"] == {"fieldPaths": []}
    assert write["updateTransforms"] == [
        {"fieldPath": "likes", "increment": {"integerValue": "-1"}},
        {"fieldPath": "likedBy", "removeAllFromArray": {"values": [{"stringValue": "u1"}]}},
    ]


@pytest.mark.asyncio
async def test_add_comment_bumps_parent_in_same_commit():
    recorder = Recorder()
    client = make_client(recorder)

    result = await client.add_comment("x", {"author": "Ada", "message": "hi"}, comment_id="k1")

    assert result.document_id == "k1"
    comment, parent = recorder.body()["writes"]
    assert comment["update"]["name"] == f"{ROOT}/feedItems/x/comments/k1"
    assert parent["update"]["name"] == f"{ROOT}/feedItems/x"
    assert parent["updateTransforms"] == [{"fieldPath": "comments", "increment": {"integerValue": "1"}}]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response, kind",
    [
        (error(403, "PERMISSION_DENIED"), ResultKind.PERMISSION_DENIED),
        (error(401, "UNAUTHENTICATED"), ResultKind.PERMISSION_DENIED),
        (error(404, "NOT_FOUND"), ResultKind.NOT_FOUND),
        (error(400, "FAILED_PRECONDITION"), ResultKind.CONFLICT),
        (error(409, "ALREADY_EXISTS"), ResultKind.CONFLICT),
        (error(503, "UNAVAILABLE"), ResultKind.TRANSIENT),
        (error(429, "RESOURCE_EXHAUSTED"), ResultKind.TRANSIENT),
        (httpx.Response(502, text="Bad Gateway"), ResultKind.TRANSIENT),
        (httpx.ConnectError("connection refused"), ResultKind.TRANSIENT),
    ],
)
async def test_commit_errors_map_to_result_kinds(response, kind):
    client = make_client(Recorder(response))

    result = await client.delete_item("x")

    assert result.kind == kind
    assert not result.ok


@pytest.mark.asyncio
async def test_get_document():
    recorder = Recorder(
        httpx.Response(200, json={
            "name": f"{ROOT}/attendance/C1_2025-11-03",
            "fields": {"attendance": {"mapValue": {"fields": {"stu1": {"stringValue": "late"}}}}},
            "updateTime": "2025-11-03T09:00:00.123456789Z",
        }),
        error(404, "NOT_FOUND"),
        error(403, "PERMISSION_DENIED"),
    )
    client = make_client(recorder)

    doc = await client.get_document("attendance/C1_2025-11-03")
    assert doc.fields == {"attendance": {"stu1": "late"}}
    assert doc.version == "2025-11-03T09:00:00.123456789Z"

    assert await client.get_document("attendance/missing") is None
    with pytest.raises(PermissionDeniedError):
        await client.get_document("attendance/secret")


@pytest.mark.asyncio
async def test_set_document_preconditions():
    recorder = Recorder()
    client = make_client(recorder)

    await client.set_document(
        "attendance/C1_2025-11-03",
        {"attendance": {}},
        server_timestamps=("updatedAt",),
        precondition=Precondition(version="2025-11-03T09:00:00.123456789Z"),
    )
    await client.set_document("attendance/C1_2025-11-04", {}, precondition=Precondition(exists=False))

    first = recorder.body(0)["writes"][0]
    assert first["currentDocument"] == {"updateTime": "2025-11-03T09:00:00.123456789Z"}
    assert first["updateTransforms"] == [{"fieldPath": "updatedAt", "setToServerValue": "REQUEST_TIME"}]
    assert recorder.body(1)["writes"][0]["currentDocument"] == {"exists": False}


@pytest.mark.asyncio
async def test_query_builds_structured_query():
    recorder = Recorder(httpx.Response(200, json=[
        {"document": {"name": f"{ROOT}/attendance/C1_2025-11-03", "fields": {"date": {"stringValue": "2025-11-03"}}}},
        {"readTime": "2025-11-03T09:00:00Z"},
    ]))
    client = make_client(recorder)

    docs = await client.query(
        "attendance",
        [FieldFilter("attendance.stu-1", "in", ["present", "late"]), FieldFilter("date", "==", "2025-11-03")],
    )

    assert [d.id for d in docs] == ["C1_2025-11-03"]
    assert recorder.requests[0].url.path.endswith("/documents:runQuery")
    query = recorder.body()["structuredQuery"]
    assert query["from"] == [{"collectionId": "attendance"}]
    first, second = query["where"]["compositeFilter"]["filters"]
    assert first["fieldFilter"]["field"] == {"fieldPath": "attendance.`stu-1`"}
    assert first["fieldFilter"]["op"] == "IN"
    assert second["fieldFilter"]["value"] == {"stringValue": "2025-11-03"}


def test_quote_field_path():
    assert quote_field_path("likes") == "likes"
    assert quote_field_path("attendance.abc123") == "attendance.abc123"
    assert quote_field_path("attendance.9xyz") == "attendance.`9xyz`"


class FakeChannel:
    def __init__(self):
        self.deliver = None
        self.closed = False

    def open(self, collection, deliver):
        self.collection = collection
        self.deliver = deliver

        def close():
            self.closed = True

        return close


def test_subscribe_uses_push_channel():
    channel = FakeChannel()
    client = FirestoreClient("demo", channel=channel)
    received = []

    subscription = client.subscribe("feedItems", received.append)
    channel.deliver([{"name": f"{ROOT}/feedItems/s1", "fields": {"message": {"stringValue": "hi"}}}])
    subscription.unsubscribe()
    channel.deliver([])

    assert channel.collection == "feedItems"
    assert channel.closed
    assert len(received) == 1
    assert received[0][0].id == "s1"


def test_subscribe_requires_a_channel():
    with pytest.raises(RuntimeError):
        FirestoreClient("demo").subscribe("feedItems", lambda docs: None)
