"""VTODO <-> task record mapping.

Only the subset of iCalendar the task store understands is mapped. All
date/time values are written and read as floating time: the wall-clock
components survive a round trip unchanged no matter which zone a client
lives in.
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime

from icalendar import Calendar, vCategory, vDDDTypes
from icalendar import Todo as VTodo

from opentasks_sync.core.errors import ICalParseError
from opentasks_sync.core.models import RemoteTaskRecord, TaskFields, TaskStatus
from opentasks_sync.utils.datetime_utils import parse_floating, to_floating, utc_wallclock

logger = logging.getLogger(__name__)

PRODID = "-//OpenTasks//opentasks-sync//EN"

STATUS_TO_WIRE: dict[TaskStatus, str] = {
    TaskStatus.PENDING: "NEEDS-ACTION",
    TaskStatus.IN_PROGRESS: "IN-PROCESS",
    TaskStatus.COMPLETED: "COMPLETED",
    TaskStatus.CANCELLED: "CANCELLED",
}
STATUS_FROM_WIRE: dict[str, TaskStatus] = {wire: status for status, wire in STATUS_TO_WIRE.items()}


def priority_to_wire(priority: int) -> int | None:
    """Local priority scaled x2 and clamped to 1-9; ``None`` when unset."""
    if not priority or priority <= 0:
        return None
    return max(1, min(9, priority * 2))


def priority_from_wire(priority: int) -> int:
    """Inverse of :func:`priority_to_wire` (0 = undefined)."""
    if priority <= 0:
        return 0
    return math.ceil(priority / 2)


def serialize_task(task: TaskFields, uid: str, *, now: datetime | None = None) -> str:
    """
    Build the VCALENDAR text for one task.

    Args:
        task: Task content to serialize
        uid: Cross-system identity of the task
        now: Generation time used for DTSTAMP (defaults to the current time)

    Returns:
        iCalendar text containing a single VTODO
    """
    stamp = utc_wallclock(now)

    cal = Calendar()
    cal.add("prodid", PRODID)
    cal.add("version", "2.0")

    todo = VTodo()
    todo.add("uid", uid)
    todo.add("summary", task.title or "")
    todo.add("status", STATUS_TO_WIRE.get(TaskStatus(task.status), "NEEDS-ACTION"))
    todo.add("dtstamp", _floating(stamp))

    if task.description:
        todo.add("description", task.description)
    if task.location:
        todo.add("location", task.location)
    if task.url:
        todo.add("url", task.url)
    if task.organizer:
        todo.add("organizer", task.organizer)
    if task.due:
        todo.add("due", _floating(task.due))
    if task.start:
        todo.add("dtstart", _floating(task.start))
    if task.created:
        todo.add("created", _floating(task.created))
    if task.modified:
        todo.add("last-modified", _floating(task.modified))

    wire_priority = priority_to_wire(task.priority)
    if wire_priority is not None:
        todo.add("priority", wire_priority)
    if task.percent_complete:
        todo.add("percent-complete", max(0, min(100, int(task.percent_complete))))
    if task.status == TaskStatus.COMPLETED:
        todo.add("completed", _floating(task.completed_at or stamp))
    if task.categories:
        todo.add("categories", vCategory(list(task.categories)))

    cal.add_component(todo)
    return cal.to_ical().decode("utf-8")


def parse_task(
    text: str,
    *,
    href: str | None = None,
    etag: str | None = None,
    last_modified: datetime | None = None,
) -> RemoteTaskRecord:
    """
    Parse the first VTODO of an iCalendar resource.

    Raises:
        ICalParseError: if the text is not iCalendar, has no VTODO, or the VTODO has no UID
    """
    try:
        cal = Calendar.from_ical(text)
    except Exception as e:
        raise ICalParseError(f"Invalid iCalendar data: {e}", href=href) from e

    vtodo = next(iter(cal.walk("VTODO")), None)
    if vtodo is None:
        raise ICalParseError("No VTODO component found", href=href)

    uid = str(vtodo.get("UID", "")).strip()
    if not uid:
        raise ICalParseError("VTODO has no UID", href=href)

    status = STATUS_FROM_WIRE.get(str(vtodo.get("STATUS", "")).strip().upper(), TaskStatus.PENDING)

    return RemoteTaskRecord(
        uid=uid,
        title=str(vtodo.get("SUMMARY", "")),
        description=_optional_text(vtodo.get("DESCRIPTION")),
        location=_optional_text(vtodo.get("LOCATION")),
        url=_optional_text(vtodo.get("URL")),
        organizer=_optional_text(vtodo.get("ORGANIZER")),
        priority=priority_from_wire(_int_value(vtodo.get("PRIORITY"))),
        status=status,
        start=_date_value(vtodo, "DTSTART"),
        due=_date_value(vtodo, "DUE"),
        completed_at=_date_value(vtodo, "COMPLETED"),
        created=_date_value(vtodo, "CREATED"),
        modified=_date_value(vtodo, "LAST-MODIFIED"),
        percent_complete=max(0, min(100, _int_value(vtodo.get("PERCENT-COMPLETE")))),
        categories=_categories(vtodo.get("CATEGORIES")),
        etag=etag,
        last_modified=last_modified,
        href=href,
    )


def _optional_text(value) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


def _int_value(value) -> int:
    if value is None:
        return 0
    try:
        return int(str(value).strip())
    except ValueError:
        logger.debug("Ignoring non-integer value %r", value)
        return 0


def _categories(value) -> list[str]:
    if value is None:
        return []
    values = value if isinstance(value, list) else [value]
    result: list[str] = []
    for item in values:
        cats = getattr(item, "cats", None)
        if cats is None:
            cats = str(item).split(",")
        result.extend(str(cat).strip() for cat in cats if str(cat).strip())
    return result


def _date_value(vtodo: VTodo, name: str) -> datetime | None:
    prop = vtodo.get(name)
    if isinstance(prop, list):
        prop = prop[0] if prop else None
    if prop is None:
        return None

    value = getattr(prop, "dt", None)
    if isinstance(value, (datetime, date)):
        # Zone info is dropped, wall-clock components are kept as written
        return to_floating(value)

    raw = prop.to_ical().decode("utf-8") if hasattr(prop, "to_ical") else str(prop)
    try:
        return parse_floating(raw)
    except ValueError:
        logger.warning(f"Ignoring unparseable {name} value: {raw!r}")
        return None


def _floating(value: datetime) -> vDDDTypes:
    # Raw datetimes for DTSTAMP/CREATED/LAST-MODIFIED get converted to UTC by icalendar
    return vDDDTypes(to_floating(value))
