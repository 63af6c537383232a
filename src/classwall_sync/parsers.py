"""Parsers that normalize remote documents at the adapter boundary."""

import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

from .models import AttendanceRequest, Attachments, Comment, Document, FeedItem, Role

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Epoch values above this are milliseconds (year ~5138 in seconds)
_MILLIS_THRESHOLD = 1e11

_FRACTION_RE = re.compile(r"\.(\d+)")


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_epoch(seconds: float) -> datetime:
    if abs(seconds) > _MILLIS_THRESHOLD:
        seconds = seconds / 1000.0
    return _EPOCH + timedelta(seconds=seconds)


def _parse_timestamp_string(text: str) -> datetime:
    text = text.strip()
    try:
        return _from_epoch(float(text))
    except ValueError:
        pass

    # fromisoformat wants at most microsecond precision and no "Z"
    iso = text.replace("Z", "+00:00")
    iso = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), iso, count=1)
    try:
        return _utc(datetime.fromisoformat(iso))
    except ValueError:
        pass

    formats = [
        "%Y-%m-%d %H:%M:%S",
        "%Y-%m-%d %H:%M",
        "%Y-%m-%d",
        "%a %b %d %Y %H:%M:%S",
    ]
    for fmt in formats:
        try:
            return _utc(datetime.strptime(text, fmt))
        except ValueError:
            continue

    raise ValueError(f"Could not parse timestamp: {text!r}")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Normalize every timestamp shape seen in stored documents.

    Accepted shapes: ``None``, ``datetime`` (naive values are UTC), ``date``,
    epoch seconds or milliseconds, ISO-8601 strings, Firestore's
    ``{"seconds", "nanoseconds"}`` objects (with or without leading
    underscores) and REST ``{"timestampValue": ...}`` wrappers.

    Returns:
        An aware UTC datetime, or None when the value is absent

    Raises:
        ValueError: If a string cannot be parsed
        TypeError: If the value has an unsupported shape
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return _utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise TypeError(f"Unsupported timestamp value: {value!r}")
    if isinstance(value, (int, float)):
        return _from_epoch(float(value))
    if isinstance(value, str):
        if not value.strip():
            return None
        return _parse_timestamp_string(value)
    if isinstance(value, dict):
        if "timestampValue" in value:
            return parse_timestamp(value["timestampValue"])
        seconds = value.get("seconds", value.get("_seconds"))
        if seconds is not None:
            nanos = value.get("nanoseconds", value.get("_nanoseconds", 0)) or 0
            return _EPOCH + timedelta(seconds=int(seconds), microseconds=int(nanos) // 1000)
    raise TypeError(f"Unsupported timestamp value: {value!r}")


def format_timestamp(value: datetime) -> str:
    """Format a datetime the way Firestore's REST API expects it."""
    return _utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def date_key(value: Any) -> str:
    """Return the ``YYYY-MM-DD`` key of a local calendar day."""
    return parse_day(value).isoformat()


def parse_day(value: Any) -> date:
    """Parse a calendar day from a date, an aware datetime or a day key."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone()
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.strptime(value.strip(), "%Y-%m-%d").date()
        except ValueError:
            raise ValueError(f"Invalid day key (expected YYYY-MM-DD): {value!r}")
    raise TypeError(f"Unsupported day value: {value!r}")


def parse_role(value: Any) -> Role:
    """Parse a stored role; older documents use capitalized names."""
    if isinstance(value, Role):
        return value
    if isinstance(value, str) and value.strip().lower() == Role.INSTRUCTOR.value:
        return Role.INSTRUCTOR
    return Role.STUDENT


# Firestore REST value encoding


def encode_value(value: Any) -> dict:
    """Encode a Python value as a Firestore REST ``Value``."""
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, datetime):
        return {"timestampValue": format_timestamp(value)}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, dict):
        return {"mapValue": {"fields": encode_fields(value)}}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value) if isinstance(value, (set, frozenset)) else value
        return {"arrayValue": {"values": [encode_value(v) for v in items]}}
    raise TypeError(f"Cannot encode value of type {type(value).__name__}")


def encode_fields(fields: dict) -> dict:
    return {key: encode_value(value) for key, value in fields.items()}


def decode_value(value: dict) -> Any:
    """Decode a Firestore REST ``Value`` into a Python value."""
    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "timestampValue" in value:
        return parse_timestamp(value["timestampValue"])
    if "stringValue" in value:
        return value["stringValue"]
    if "referenceValue" in value:
        return value["referenceValue"]
    if "mapValue" in value:
        return decode_fields(value["mapValue"].get("fields", {}))
    if "arrayValue" in value:
        return [decode_value(v) for v in value["arrayValue"].get("values", [])]
    raise ValueError(f"Unknown Firestore value: {value!r}")


def decode_fields(fields: dict) -> dict:
    return {key: decode_value(value) for key, value in fields.items()}


def document_from_json(data: dict) -> Document:
    """Build a Document from a REST document resource.

    The resource name looks like
    ``projects/p/databases/(default)/documents/feedItems/abc``.
    """
    name = data["name"]
    relative = name.split("/documents/", 1)[-1]
    collection, _, doc_id = relative.rpartition("/")
    return Document(
        id=doc_id,
        collection=collection,
        fields=decode_fields(data.get("fields", {})),
        update_time=parse_timestamp(data.get("updateTime")),
        version=data.get("updateTime"),
    )


# Documents to models


def _non_negative(value: Any) -> int:
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError):
        return 0


def feed_item_from_document(doc: Document) -> FeedItem:
    """Convert a ``feedItems`` document into a FeedItem."""
    data = doc.fields
    image = data.get("image")
    files = data.get("files") or []
    links = data.get("links") or []
    liked_by = data.get("likedBy") or []

    return FeedItem(
        id=doc.id,
        author_id=str(data.get("authorId", "")),
        author_display_name=str(data.get("authorDisplayName") or data.get("author") or ""),
        role=parse_role(data.get("role")),
        body=str(data.get("message") or ""),
        created_at=parse_timestamp(data.get("createdAt")),
        attachments=Attachments(
            images=(str(image),) if image else (),
            files=tuple(f for f in files if isinstance(f, dict)),
            links=tuple(str(link) for link in links),
        ),
        like_count=_non_negative(data.get("likes")),
        liked_by=frozenset(str(uid) for uid in liked_by if isinstance(uid, str)),
        comment_count=_non_negative(data.get("comments")),
    )


def feed_item_fields(item: FeedItem) -> dict:
    """Fields written when a post is created. ``createdAt`` is set by the server."""
    fields: dict[str, Any] = {
        "authorId": item.author_id,
        "authorDisplayName": item.author_display_name,
        "role": item.role.value,
        "message": item.body,
        "likes": 0,
        "likedBy": [],
        "comments": 0,
    }
    fields.update(attachment_fields(item.attachments))
    return fields


def attachment_fields(attachments: Attachments) -> dict:
    fields: dict[str, Any] = {
        "image": attachments.images[0] if attachments.images else None,
        "files": [dict(f) for f in attachments.files],
    }
    if attachments.links:
        fields["links"] = list(attachments.links)
    return fields


def comment_from_document(doc: Document, parent_id: str) -> Comment:
    """Convert a ``feedItems/{id}/comments`` document into a Comment."""
    data = doc.fields
    return Comment(
        id=doc.id,
        parent_id=parent_id,
        author_id=str(data.get("authorId", "")),
        author_display_name=str(data.get("author") or ""),
        role=parse_role(data.get("role")),
        body=str(data.get("message") or ""),
        created_at=parse_timestamp(data.get("createdAt")),
    )


def comment_fields(comment: Comment) -> dict:
    """Fields written for a new comment. ``createdAt`` is set by the server."""
    return {
        "author": comment.author_display_name,
        "authorId": comment.author_id,
        "role": comment.role.value,
        "message": comment.body,
    }


def attendance_request_from_document(doc: Document) -> AttendanceRequest:
    """Convert an attendance request document into an AttendanceRequest."""
    data = doc.fields
    return AttendanceRequest(
        id=doc.id,
        class_id=str(data.get("classId", "")),
        student_id=str(data.get("studentId", "")),
        student_name=str(data.get("studentName") or ""),
        day=parse_day(data.get("date")),
        requested_at=parse_timestamp(data.get("requestedAt")),
    )
