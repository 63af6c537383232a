from datetime import date, datetime, timedelta, timezone

import pytest

from classwall_sync.models import Attachments, Document, FeedItem, Role
from classwall_sync.parsers import (
    attachment_fields,
    comment_from_document,
    date_key,
    decode_fields,
    document_from_json,
    encode_fields,
    feed_item_fields,
    feed_item_from_document,
    parse_day,
    parse_role,
    parse_timestamp,
)

EXPECTED = datetime(2025, 11, 3, 9, 30, 15, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "value",
    [
        "2025-11-03T09:30:15Z",
        "2025-11-03T09:30:15.000Z",
        "2025-11-03T11:30:15+02:00",
        1762162215,
        1762162215000,
        "1762162215",
        {"seconds": 1762162215, "nanoseconds": 0},
        {"_seconds": 1762162215, "_nanoseconds": 0},
        {"timestampValue": "2025-11-03T09:30:15Z"},
        datetime(2025, 11, 3, 9, 30, 15),
    ],
)
def test_parse_timestamp_shapes(value):
    assert parse_timestamp(value) == EXPECTED


def test_parse_timestamp_truncates_nanoseconds():
    parsed = parse_timestamp("2025-11-03T09:30:15.123456789Z")
    assert parsed == EXPECTED + timedelta(microseconds=123456)


def test_parse_timestamp_absent():
    assert parse_timestamp(None) is None
    assert parse_timestamp("   ") is None


def test_parse_timestamp_rejects_garbage():
    with pytest.raises(ValueError):
        parse_timestamp("next tuesday")
    with pytest.raises(TypeError):
        parse_timestamp(True)
    with pytest.raises(TypeError):
        parse_timestamp({"unexpected": 1})


def test_date_key_and_parse_day():
    assert date_key(date(2025, 11, 3)) == "2025-11-03"
    assert date_key("2025-11-03") == "2025-11-03"
    assert parse_day(datetime(2025, 11, 3, 12, 0)) == date(2025, 11, 3)
    with pytest.raises(ValueError):
        parse_day("03.11.2025")


def test_parse_role_is_case_insensitive():
    assert parse_role("Instructor") is Role.INSTRUCTOR
    assert parse_role("instructor") is Role.INSTRUCTOR
    assert parse_role("Student") is Role.STUDENT
    assert parse_role(None) is Role.STUDENT


def test_encode_fields_uses_firestore_value_types():
    encoded = encode_fields({"likes": 3, "likedBy": ["u1"], "image": None, "attendance": {"stu1": "late"}})
    assert encoded["likes"] == {"integerValue": "3"}
    assert encoded["likedBy"] == {"arrayValue": {"values": [{"stringValue": "u1"}]}}
    assert encoded["image"] == {"nullValue": None}
    assert encoded["attendance"] == {"mapValue": {"fields": {"stu1": {"stringValue": "late"}}}}


def test_decode_fields_normalizes_timestamps():
    decoded = decode_fields({
        "createdAt": {"timestampValue": "2025-11-03T09:30:15.500Z"},
        "likes": {"integerValue": "2"},
        "attendance": {"mapValue": {}},
    })
    assert decoded["createdAt"] == EXPECTED + timedelta(milliseconds=500)
    assert decoded["likes"] == 2
    assert decoded["attendance"] == {}


def test_document_from_json_keeps_raw_update_time():
    doc = document_from_json({
        "name": "projects/p/databases/(default)/documents/feedItems/abc/comments/c1",
        "fields": {"message": {"stringValue": "hi"}},
        "updateTime": "2025-11-03T09:30:15.123456789Z",
    })
    assert doc.id == "c1"
    assert doc.collection == "feedItems/abc/comments"
    assert doc.version == "2025-11-03T09:30:15.123456789Z"
    assert doc.fields == {"message": "hi"}


def test_feed_item_from_document():
    doc = Document(
        id="s1",
        collection="feedItems",
        fields={
            "authorId": "u1",
            "authorDisplayName": "Ada",
            "role": "Instructor",
            "message": "hello",
            "image": "https://img/1.png",
            "files": [{"name": "notes.pdf"}],
            "createdAt": {"seconds": 1762162215, "nanoseconds": 0},
            "likes": 2,
            "likedBy": ["u2", "u3"],
            "comments": -1,
        },
    )
    item = feed_item_from_document(doc)
    assert item.role is Role.INSTRUCTOR
    assert item.created_at == EXPECTED
    assert item.attachments.images == ("https://img/1.png",)
    assert item.liked_by == frozenset({"u2", "u3"})
    assert item.like_count == 2
    assert item.comment_count == 0


def test_feed_item_fields_shape():
    item = FeedItem(
        id="local_post_x",
        author_id="u1",
        author_display_name="Ada",
        role=Role.STUDENT,
        body="hello",
        created_at=EXPECTED,
    )
    assert feed_item_fields(item) == {
        "authorId": "u1",
        "authorDisplayName": "Ada",
        "role": "student",
        "message": "hello",
        "likes": 0,
        "likedBy": [],
        "comments": 0,
        "image": None,
        "files": [],
    }


def test_attachment_fields_writes_links_only_when_present():
    fields = attachment_fields(Attachments(images=("a.png", "b.png"), links=("https://x",)))
    assert fields["image"] == "a.png"
    assert fields["links"] == ["https://x"]


def test_comment_from_document():
    doc = Document("c1", "feedItems/s1/comments", {"author": "Bo", "authorId": "u2", "message": "nice"})
    comment = comment_from_document(doc, "s1")
    assert comment.parent_id == "s1"
    assert comment.author_display_name == "Bo"
    assert comment.created_at is None
