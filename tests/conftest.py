"""Pytest fixtures: an in-memory CalDAV server behind httpx.MockTransport, and a temp store."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from urllib.parse import unquote
from xml.sax.saxutils import escape

import httpx
import keyring
import keyring.errors
import pytest

from opentasks_sync.core.tasks_sync import TasksSyncEngine
from opentasks_sync.sources.caldav.client import CalDAVTaskClient
from opentasks_sync.utils.db import TaskStore

SERVER_URL = "https://dav.example.com"
ROOT = "/calendars/alice/"


def make_vtodo(uid: str, summary: str = "Task", extra: str = "") -> str:
    """Minimal VCALENDAR text holding one VTODO."""
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Test//Test//EN",
        "BEGIN:VTODO",
        f"UID:{uid}",
        "DTSTAMP:20240101T000000Z",
        f"SUMMARY:{summary}",
    ]
    if extra:
        lines.extend(extra.strip().splitlines())
    lines += ["END:VTODO", "END:VCALENDAR", ""]
    return "\r\n".join(lines)


@dataclass
class Resource:
    body: str
    etag: str


class FakeDavServer:
    """Just enough CalDAV to exercise discovery, REPORT, PUT and DELETE."""

    def __init__(self):
        self.collections: dict[str, dict[str, Resource]] = {}
        self.requests: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], int] = {}
        self.connect_failures: set[tuple[str, str]] = set()
        self.unreachable = False
        self.put_returns_etag = True
        self.report_includes_etag = True
        self._etag_counter = 0

    def add_collection(self, path: str) -> str:
        path = path if path.endswith("/") else path + "/"
        self.collections.setdefault(path, {})
        return path

    def remove_collection(self, path: str) -> None:
        self.collections.pop(path, None)

    def add_task(self, collection: str, uid: str, summary: str = "Task", extra: str = "") -> str:
        return self.put_raw(collection, f"{uid}.ics", make_vtodo(uid, summary, extra))

    def put_raw(self, collection: str, name: str, body: str) -> str:
        etag = self._next_etag()
        self.collections[collection][name] = Resource(body=body, etag=etag)
        return etag

    def touch(self, collection: str, uid: str, summary: str) -> str:
        """Simulate another client editing a task."""
        return self.add_task(collection, uid, summary)

    def resource(self, collection: str, uid: str) -> Resource | None:
        return self.collections.get(collection, {}).get(f"{uid}.ics")

    def count(self, method: str) -> int:
        return sum(1 for m, _ in self.requests if m == method)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = unquote(request.url.path)
        self.requests.append((request.method, path))

        if self.unreachable:
            raise httpx.ConnectError("Connection refused", request=request)
        if (request.method, path) in self.connect_failures:
            raise httpx.ConnectTimeout("connect timed out", request=request)

        status = self.failures.get((request.method, path))
        if status is not None:
            return httpx.Response(status, text="injected failure")

        if request.method == "PROPFIND":
            return self._propfind(path, request.headers.get("Depth", "1"))
        if request.method == "REPORT":
            return self._report(path)
        if request.method == "PUT":
            return self._put(path, request.content.decode("utf-8"))
        if request.method == "DELETE":
            return self._delete(path)
        return httpx.Response(405)

    def _propfind(self, path: str, depth: str) -> httpx.Response:
        base = path if path.endswith("/") else path + "/"
        known = base == "/" or base in self.collections or any(c.startswith(base) for c in self.collections)
        if not known:
            return httpx.Response(404)

        entries = [_collection_xml(base)]
        if depth != "0":
            for collection in sorted(self.collections):
                rest = collection[len(base):].strip("/")
                if collection != base and collection.startswith(base) and "/" not in rest:
                    entries.append(_collection_xml(collection))
            for name, resource in self.collections.get(base, {}).items():
                entries.append(_resource_xml(base + name, resource.etag, None))
        return _multistatus(entries)

    def _report(self, path: str) -> httpx.Response:
        base = path if path.endswith("/") else path + "/"
        if base not in self.collections:
            return httpx.Response(404)
        entries = [
            _resource_xml(
                base + name,
                resource.etag if self.report_includes_etag else None,
                resource.body,
            )
            for name, resource in self.collections[base].items()
        ]
        return _multistatus(entries)

    def _put(self, path: str, body: str) -> httpx.Response:
        collection, name = path.rsplit("/", 1)
        collection += "/"
        if collection not in self.collections:
            return httpx.Response(409, text="parent collection missing")
        existed = name in self.collections[collection]
        etag = self.put_raw(collection, name, body)
        headers = {"ETag": f'"{etag}"'} if self.put_returns_etag else {}
        return httpx.Response(204 if existed else 201, headers=headers)

    def _delete(self, path: str) -> httpx.Response:
        collection, name = path.rsplit("/", 1)
        collection += "/"
        if self.collections.get(collection, {}).pop(name, None) is None:
            return httpx.Response(404)
        return httpx.Response(204)

    def _next_etag(self) -> str:
        self._etag_counter += 1
        return f"etag-{self._etag_counter}"


def _collection_xml(href: str) -> str:
    return (
        "<d:response>"
        f"<d:href>{escape(href)}</d:href>"
        "<d:propstat><d:prop>"
        "<d:resourcetype><d:collection/><c:calendar/></d:resourcetype>"
        "<d:displayname>x</d:displayname>"
        "</d:prop><d:status>HTTP/1.1 200 OK</d:status></d:propstat>"
        "</d:response>"
    )


def _resource_xml(href: str, etag: str | None, body: str | None) -> str:
    props = "<d:resourcetype/>"
    if etag is not None:
        props += f'<d:getetag>"{escape(etag)}"</d:getetag>'
    if body is not None:
        props += f"<c:calendar-data>{escape(body)}</c:calendar-data>"
    return (
        "<d:response>"
        f"<d:href>{escape(href)}</d:href>"
        f"<d:propstat><d:prop>{props}</d:prop><d:status>HTTP/1.1 200 OK</d:status></d:propstat>"
        "</d:response>"
    )


def _multistatus(entries: list[str]) -> httpx.Response:
    body = (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">'
        + "".join(entries)
        + "</d:multistatus>"
    )
    return httpx.Response(207, content=body.encode("utf-8"), headers={"Content-Type": "application/xml"})


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def dav_server() -> FakeDavServer:
    server = FakeDavServer()
    server.add_collection(ROOT)
    return server


@pytest.fixture
async def client(dav_server):
    caldav_client = CalDAVTaskClient(
        SERVER_URL,
        "alice",
        "secret",
        transport=httpx.MockTransport(dav_server.handler),
    )
    yield caldav_client
    await caldav_client.close()


@pytest.fixture
async def store(tmp_path) -> TaskStore:
    task_store = TaskStore(tmp_path / "tasks.db")
    await task_store.initialize()
    return task_store


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(client, store, clock) -> TasksSyncEngine:
    return TasksSyncEngine(
        client,
        store,
        collection_root=ROOT,
        account_name=f"caldav:alice@{SERVER_URL}",
        clock=clock,
    )


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Settings must not pick up OPENTASKS_* variables from the developer's shell."""
    for name in list(os.environ):
        if name.upper().startswith("OPENTASKS_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def memory_keyring(monkeypatch) -> dict[tuple[str, str], str]:
    """Replace the system keyring with a dict."""
    secrets: dict[tuple[str, str], str] = {}

    def set_password(service, account, password):
        secrets[(service, account)] = password

    def get_password(service, account):
        return secrets.get((service, account))

    def delete_password(service, account):
        if secrets.pop((service, account), None) is None:
            raise keyring.errors.PasswordDeleteError("Password not found")

    monkeypatch.setattr(keyring, "set_password", set_password)
    monkeypatch.setattr(keyring, "get_password", get_password)
    monkeypatch.setattr(keyring, "delete_password", delete_password)
    return secrets


@pytest.fixture
def restore_logging():
    """Undo root logger changes made by setup_logging."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
    logging.captureWarnings(False)
