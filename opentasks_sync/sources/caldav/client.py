"""CalDAV client for task collections.

Speaks raw WebDAV over httpx: PROPFIND for listings, REPORT calendar-query
for task bodies, PUT/DELETE for individual ``<uid>.ics`` resources.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from urllib.parse import quote, urlsplit

import httpx

from opentasks_sync.core.errors import (
    ICalParseError,
    RemoteError,
    ServerUnreachableError,
)
from opentasks_sync.core.models import LocalTask, RemoteTaskRecord
from opentasks_sync.sources.caldav.discovery import normalize_collection_path
from opentasks_sync.sources.caldav.ical_codec import parse_task, serialize_task
from opentasks_sync.sources.caldav.multistatus import (
    DavResponse,
    href_to_path,
    normalize_etag,
    parse_multistatus,
)
from opentasks_sync.version import get_version

logger = logging.getLogger(__name__)

REPORT_VTODO = """<?xml version="1.0" encoding="utf-8"?>
<c:calendar-query xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:getetag/>
    <d:getlastmodified/>
    <c:calendar-data/>
  </d:prop>
  <c:filter>
    <c:comp-filter name="VCALENDAR">
      <c:comp-filter name="VTODO"/>
    </c:comp-filter>
  </c:filter>
</c:calendar-query>
"""

PROPFIND_PING = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:resourcetype/>
  </d:prop>
</d:propfind>
"""

XML_CONTENT_TYPE = "application/xml; charset=utf-8"
ICAL_CONTENT_TYPE = "text/calendar; charset=utf-8"


@dataclass
class FetchResult:
    """Outcome of listing one collection."""

    tasks: list[RemoteTaskRecord] = field(default_factory=list)
    # (href, reason) for every resource that could not be turned into a task
    skipped: list[tuple[str, str]] = field(default_factory=list)

    def present_uids(self, extension: str = ".ics") -> set[str]:
        """UIDs known to exist remotely, including resources that failed to parse.

        Unparseable resources contribute the stem of their file name, which
        is the uid for every resource this client created.
        """
        uids = {task.uid for task in self.tasks}
        for href, _reason in self.skipped:
            name = href.rstrip("/").rsplit("/", 1)[-1]
            if extension and name.lower().endswith(extension.lower()):
                name = name[: -len(extension)]
            if name:
                uids.add(name)
        return uids


@dataclass
class PutResult:
    uid: str
    etag: str
    href: str


def content_etag(body: str) -> str:
    """Identity tag derived from resource content, for servers that omit getetag."""
    return "sha1-" + hashlib.sha1(body.encode("utf-8")).hexdigest()


class CalDAVTaskClient:
    """Read and write VTODO resources on a CalDAV server.

    Supports:
    - PROPFIND listings (used by collection discovery)
    - Fetching every task of a collection in one REPORT
    - Creating/overwriting and deleting single task resources
    """

    def __init__(
        self,
        server_url: str,
        username: str,
        password: str | None,
        *,
        timeout: float = 30.0,
        ssl_verify: bool | str = True,
        task_extension: str = ".ics",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the CalDAV client.

        Args:
            server_url: CalDAV server URL (e.g., https://dav.example.com/dav.php)
            username: CalDAV username
            password: CalDAV password or app password
            timeout: Per-request timeout in seconds
            ssl_verify: SSL verification (True, False, or path to CA bundle)
            task_extension: Extension used for task resource names
            transport: Optional httpx transport (used by tests)
        """
        self.server_url = server_url.rstrip("/")
        self.username = username
        self.task_extension = task_extension

        parts = urlsplit(self.server_url)
        self._origin = f"{parts.scheme}://{parts.netloc}"
        self._base_path = parts.path.rstrip("/")

        self._client = httpx.AsyncClient(
            auth=(username, password or ""),
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            verify=ssl_verify,
            transport=transport,
            headers={"User-Agent": f"opentasks-sync/{get_version()}"},
        )

    async def __aenter__(self) -> CalDAVTaskClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close HTTP client connections."""
        await self._client.aclose()

    def url_for(self, path: str) -> str:
        """Absolute URL for a server path.

        Paths returned by the server usually already carry the server URL's
        path prefix (``/dav.php/...``); configured paths usually do not.
        """
        path = href_to_path(path)
        if not path.startswith("/"):
            path = "/" + path
        if self._base_path and (path == self._base_path or path.startswith(self._base_path + "/")):
            return self._origin + path
        return self._origin + self._base_path + path

    def resource_path(self, collection_path: str, uid: str) -> str:
        """Server path of the resource holding task ``uid``."""
        return f"{normalize_collection_path(collection_path)}{quote(uid, safe='@-_.~')}{self.task_extension}"

    async def test_connection(self) -> bool:
        """Test connection to the CalDAV server.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            response = await self._request(
                "PROPFIND",
                self._base_path or "/",
                headers={"Depth": "0", "Content-Type": XML_CONTENT_TYPE},
                content=PROPFIND_PING,
            )
        except RemoteError as e:
            logger.error(f"Failed to connect to CalDAV server: {e}")
            return False

        if response.status_code in (200, 207):
            return True
        logger.error(f"CalDAV server answered PROPFIND with HTTP {response.status_code}")
        return False

    async def propfind(self, path: str, depth: int = 1, body: str | None = None) -> list[DavResponse]:
        """
        Issue a PROPFIND and parse the multistatus answer.

        Args:
            path: Server path to list
            depth: Depth header value
            body: Request body (defaults to an allprop-equivalent resourcetype request)

        Returns:
            Parsed multistatus entries

        Raises:
            ServerUnreachableError: if the server cannot be reached
            RemoteError: on a non-multistatus HTTP status
            DavResponseError: if the body is not a multistatus document
        """
        response = await self._request(
            "PROPFIND",
            path,
            headers={"Depth": str(depth), "Content-Type": XML_CONTENT_TYPE},
            content=body or PROPFIND_PING,
        )
        self._expect(response, (200, 207))
        return parse_multistatus(response.content)

    async def fetch_all(self, collection_path: str) -> FetchResult:
        """
        Fetch every VTODO in a collection.

        Resources that cannot be parsed are recorded in ``skipped`` and
        otherwise ignored.

        Args:
            collection_path: Server path of the collection

        Returns:
            Parsed tasks plus the resources that were skipped
        """
        collection_path = normalize_collection_path(collection_path)
        response = await self._request(
            "REPORT",
            collection_path,
            headers={"Depth": "1", "Content-Type": XML_CONTENT_TYPE},
            content=REPORT_VTODO,
        )
        self._expect(response, (200, 207))

        result = FetchResult()
        for entry in parse_multistatus(response.content):
            if entry.is_collection or normalize_collection_path(entry.href) == collection_path:
                continue

            body = entry.calendar_data
            if not body:
                result.skipped.append((entry.href, "no calendar data"))
                continue

            etag = entry.etag or content_etag(body)
            try:
                task = parse_task(body, href=entry.href, etag=etag, last_modified=entry.last_modified)
            except ICalParseError as e:
                logger.warning(f"Skipping unparseable task resource {entry.href}: {e}")
                result.skipped.append((entry.href, str(e)))
                continue

            result.tasks.append(task)

        logger.debug(
            f"Fetched {len(result.tasks)} task(s) from {collection_path}"
            f" ({len(result.skipped)} skipped)"
        )
        return result

    async def put(self, collection_path: str, task: LocalTask) -> PutResult:
        """
        Create or overwrite the resource for a task.

        Args:
            collection_path: Server path of the collection
            task: Task to upload; must already carry its uid

        Returns:
            The uid, the server-issued ETag (or an ``uploaded-<ms>`` placeholder)
            and the resource path
        """
        if not task.uid:
            raise ValueError("Task must have a uid before it can be uploaded")

        path = self.resource_path(collection_path, task.uid)
        body = serialize_task(task, task.uid)
        response = await self._request(
            "PUT",
            path,
            headers={"Content-Type": ICAL_CONTENT_TYPE},
            content=body.encode("utf-8"),
        )
        self._expect(response, (200, 201, 204))

        etag = normalize_etag(response.headers.get("ETag"))
        if not etag:
            etag = f"uploaded-{int(time.time() * 1000)}"
            logger.debug(f"Server returned no ETag for {path}; using placeholder {etag}")

        logger.debug(f"Uploaded task {task.uid} -> {path}")
        return PutResult(uid=task.uid, etag=etag, href=path)

    async def delete(self, collection_path: str, uid: str) -> bool:
        """
        Delete the resource for a task.

        Returns:
            True if deleted, False if it was already gone
        """
        path = self.resource_path(collection_path, uid)
        response = await self._request("DELETE", path)
        if response.status_code in (404, 410):
            logger.debug(f"Task resource already gone: {path}")
            return False
        self._expect(response, (200, 202, 204))
        logger.debug(f"Deleted task resource {path}")
        return True

    async def _request(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        content: str | bytes | None = None,
    ) -> httpx.Response:
        url = self.url_for(path)
        try:
            return await self._client.request(method, url, headers=headers, content=content)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise ServerUnreachableError(f"Cannot reach CalDAV server: {e}", url=url) from e
        except httpx.HTTPError as e:
            raise RemoteError(f"{method} {url} failed: {e}", url=url) from e

    @staticmethod
    def _expect(response: httpx.Response, statuses: tuple[int, ...]) -> None:
        if response.status_code in statuses:
            return
        request = response.request
        raise RemoteError(
            f"{request.method} {request.url} returned: {response.text[:200]}",
            status_code=response.status_code,
            url=str(request.url),
        )
