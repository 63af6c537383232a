"""Attendance requests and instructor decisions."""

import logging
from typing import Any, Optional, Union

from .adapter import RemoteSyncAdapter
from .exceptions import ConflictError, PermissionDeniedError, ValidationError, raise_for_result
from .models import (
    AttendanceRecord,
    AttendanceRequest,
    AttendanceState,
    AttendanceStatus,
    AuthContext,
    FieldFilter,
    Precondition,
    ResultKind,
)
from .parsers import attendance_request_from_document, date_key, parse_day

logger = logging.getLogger(__name__)

DECIDED = (AttendanceStatus.PRESENT, AttendanceStatus.LATE, AttendanceStatus.ABSENT)


def aggregate_id(class_id: str, day: Any) -> str:
    return f"{class_id}_{date_key(day)}"


def record_id(class_id: str, day: Any, student_id: str) -> str:
    return f"{class_id}_{date_key(day)}_{student_id}"


def request_id(class_id: str, day: Any, student_id: str) -> str:
    """Request ids are derived from the aggregate key, so repeats overwrite."""
    return f"{record_id(class_id, day, student_id)}_request"


def _parse_status(status: Union[str, AttendanceStatus]) -> AttendanceStatus:
    try:
        parsed = AttendanceStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown attendance status: {status!r}")
    if parsed not in DECIDED:
        raise ValidationError(f"Cannot record attendance as {parsed.value!r}")
    return parsed


class AttendanceWorkflow:
    """State machine over attendance requests and the per-day aggregate.

    States per (class, day, student): none, requested, approved(status) and
    rejected. Only instructors decide. Approval writes the aggregate entry,
    then the per-student record, then deletes the request; these are
    separate writes, and every step is safe to repeat.
    """

    def __init__(
        self,
        adapter: RemoteSyncAdapter,
        auth: AuthContext,
        *,
        collection: str = "attendance",
        max_conflict_retries: int = 3,
    ):
        self._adapter = adapter
        self._auth = auth
        self._collection = collection
        self._max_conflict_retries = max_conflict_retries

    def _path(self, doc_id: str) -> str:
        return f"{self._collection}/{doc_id}"

    def _require_instructor(self, action: str) -> None:
        if not self._auth.is_instructor:
            raise PermissionDeniedError(f"Only instructors can {action} attendance")

    async def _aggregate(self, class_id: str, day: Any) -> dict[str, str]:
        doc = await self._adapter.get_document(self._path(aggregate_id(class_id, day)))
        if doc is None:
            return {}
        return dict(doc.fields.get("attendance") or {})

    async def _write_entry(
        self, class_id: str, day: Any, student_id: str, status: Optional[AttendanceStatus]
    ) -> None:
        """Set or clear one student's key in the aggregate, leaving other keys untouched.

        The write is conditional on the version that was read and is retried
        from a fresh read when another writer got there first.

        Raises:
            ConflictError: If every attempt lost against a concurrent writer
        """
        path = self._path(aggregate_id(class_id, day))
        for attempt in range(self._max_conflict_retries + 1):
            doc = await self._adapter.get_document(path)
            fields = dict(doc.fields) if doc is not None else {}
            attendance = dict(fields.get("attendance") or {})

            current = attendance.get(student_id)
            wanted = status.value if status is not None else None
            if current == wanted:
                return
            if wanted is None:
                attendance.pop(student_id, None)
            else:
                attendance[student_id] = wanted

            fields.update({"sectionId": class_id, "date": date_key(day), "attendance": attendance})
            precondition = Precondition(version=doc.version) if doc is not None else Precondition(exists=False)
            result = await self._adapter.set_document(
                path, fields, server_timestamps=("updatedAt",), precondition=precondition
            )
            if result.kind == ResultKind.CONFLICT:
                logger.info("Attendance %s changed concurrently, retry %d", path, attempt + 1)
                continue
            raise_for_result(result)
            return

        raise ConflictError(f"Could not update {path} after {self._max_conflict_retries + 1} attempts")

    async def request(self, class_id: str, day: Any) -> AttendanceRequest:
        """File the signed-in student's attendance request for a class and day.

        Raises:
            PermissionDeniedError: If the user is an instructor
            ValidationError: If attendance is already recorded for that day
        """
        if self._auth.is_instructor:
            raise PermissionDeniedError("Only students can request attendance")
        if not class_id:
            raise ValidationError("Class id is required")
        student_id = self._auth.user_id

        status = (await self._aggregate(class_id, day)).get(student_id)
        if status in {s.value for s in DECIDED}:
            raise ValidationError(f"Attendance already recorded as {status}")

        doc_id = request_id(class_id, day, student_id)
        result = await self._adapter.set_document(
            self._path(doc_id),
            {
                "classId": class_id,
                "studentId": student_id,
                "studentName": self._auth.display_name,
                "date": date_key(day),
                "status": AttendanceStatus.REQUESTED.value,
            },
            server_timestamps=("requestedAt",),
        )
        raise_for_result(result)
        return AttendanceRequest(doc_id, class_id, student_id, self._auth.display_name, parse_day(day))

    async def mark(
        self,
        class_id: str,
        day: Any,
        student_id: str,
        status: Optional[Union[str, AttendanceStatus]],
    ) -> Optional[AttendanceRecord]:
        """Set a student's status directly, or clear it when ``status`` is None."""
        self._require_instructor("mark")
        if not class_id or not student_id:
            raise ValidationError("Class id and student id are required")
        parsed = _parse_status(status) if status is not None else None

        await self._write_entry(class_id, day, student_id, parsed)

        path = self._path(record_id(class_id, day, student_id))
        if parsed is None:
            raise_for_result(await self._adapter.delete_document(path))
            return None

        result = await self._adapter.set_document(
            path,
            {"classId": class_id, "studentId": student_id, "date": date_key(day), "status": parsed.value},
            server_timestamps=("updatedAt",),
        )
        raise_for_result(result)
        return AttendanceRecord(class_id, student_id, parse_day(day), parsed)

    async def approve(
        self,
        class_id: str,
        day: Any,
        student_id: str,
        status: Union[str, AttendanceStatus] = AttendanceStatus.PRESENT,
    ) -> AttendanceRecord:
        """Approve a request as ``status`` and remove the request.

        Repeating an approval, for example after a crash between the writes,
        converges on the same documents.
        """
        self._require_instructor("approve")
        parsed = _parse_status(status)
        record = await self.mark(class_id, day, student_id, parsed)

        result = await self._adapter.delete_document(self._path(request_id(class_id, day, student_id)))
        raise_for_result(result)
        logger.info("Approved %s for %s on %s as %s", student_id, class_id, date_key(day), parsed.value)
        return record

    async def reject(self, class_id: str, day: Any, student_id: str) -> AttendanceState:
        """Reject a request. Only the request document is removed."""
        self._require_instructor("reject")
        result = await self._adapter.delete_document(self._path(request_id(class_id, day, student_id)))
        raise_for_result(result)
        return AttendanceState("rejected")

    async def state(self, class_id: str, day: Any, student_id: str) -> AttendanceState:
        """Current state as stored remotely.

        A rejection leaves no document behind, so it reads back as ``none``.
        """
        status = (await self._aggregate(class_id, day)).get(student_id)
        if status in {s.value for s in DECIDED}:
            return AttendanceState("approved", AttendanceStatus(status))

        request = await self._adapter.get_document(self._path(request_id(class_id, day, student_id)))
        if request is not None or status == AttendanceStatus.REQUESTED.value:
            return AttendanceState("requested")
        return AttendanceState("none")

    async def pending_requests(self, class_id: str, day: Any) -> list[AttendanceRequest]:
        """Requests for a class and day waiting for a decision, oldest first."""
        docs = await self._adapter.query(
            self._collection,
            [
                FieldFilter("classId", "==", class_id),
                FieldFilter("date", "==", date_key(day)),
                FieldFilter("status", "==", AttendanceStatus.REQUESTED.value),
            ],
        )
        requests = []
        for doc in docs:
            try:
                requests.append(attendance_request_from_document(doc))
            except (TypeError, ValueError) as e:
                logger.warning("Skipping malformed attendance request %s: %s", doc.id, e)
        return sorted(requests, key=lambda r: (r.requested_at is None, r.requested_at, r.student_id))

    async def student_history(self, student_id: Optional[str] = None) -> dict[str, AttendanceStatus]:
        """Map of day key to recorded status for one student.

        Students may only read their own history.
        """
        student_id = student_id or self._auth.user_id
        if student_id != self._auth.user_id and not self._auth.is_instructor:
            raise PermissionDeniedError("Students can only view their own attendance")

        docs = await self._adapter.query(
            self._collection,
            [FieldFilter(f"attendance.{student_id}", "in", [s.value for s in DECIDED])],
        )
        history = {}
        for doc in docs:
            day = doc.fields.get("date")
            status = (doc.fields.get("attendance") or {}).get(student_id)
            if day and status:
                history[str(day)] = AttendanceStatus(status)
        return dict(sorted(history.items()))

    async def sweep_stale_requests(self, class_id: str, day: Any) -> list[str]:
        """Delete requests whose student already has a decided status.

        These are left behind when an approval stops between writing the
        aggregate and deleting the request.

        Returns:
            Ids of the deleted request documents
        """
        self._require_instructor("clean up")
        attendance = await self._aggregate(class_id, day)
        decided = {s.value for s in DECIDED}

        removed = []
        for request in await self.pending_requests(class_id, day):
            if attendance.get(request.student_id) not in decided:
                continue
            raise_for_result(await self._adapter.delete_document(self._path(request.id)))
            removed.append(request.id)
        if removed:
            logger.info("Removed %d stale attendance requests for %s", len(removed), aggregate_id(class_id, day))
        return removed
