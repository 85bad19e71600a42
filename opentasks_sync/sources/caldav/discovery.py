"""Locating task collections beneath a configured root.

Server layouts vary (Radicale ``/<user>/<list>/``, Baikal
``/dav.php/calendars/<user>/<list>/``, Nextcloud
``/remote.php/dav/calendars/<user>/<list>/``), so matching is deliberately
tolerant: a child collection qualifies when its path starts with, or merely
contains, the configured root.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING
from urllib.parse import unquote

from opentasks_sync.core.errors import RemoteError, ServerUnreachableError
from opentasks_sync.sources.caldav.multistatus import DavResponse, href_to_path

if TYPE_CHECKING:
    from opentasks_sync.sources.caldav.client import CalDAVTaskClient

logger = logging.getLogger(__name__)

PROPFIND_COLLECTIONS = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:resourcetype/>
  </d:prop>
</d:propfind>
"""

SOURCE_ROOT = "root"
SOURCE_SERVER_ROOT = "server_root"
SOURCE_FALLBACK = "fallback"

_SYSTEM_CONTAINERS = {"inbox", "outbox", "principals"}
_DISPLAY_SKIP = {
    "dav.php",
    "calendars",
    "caldav",
    "carddav",
    "user",
    "home",
    "public",
    "private",
    "principals",
    "users",
    "collections",
}
_UUID_LIKE = re.compile(r"^[a-f0-9-]{8,}$", re.IGNORECASE)


@dataclass
class DiscoveryResult:
    """Collections found by one discovery run.

    ``source`` tells how the list was obtained: listing the configured root,
    listing the server root after the configured root came back empty, or the
    single-collection fallback.
    """

    paths: list[str] = field(default_factory=list)
    source: str = SOURCE_ROOT
    error: str | None = None

    @property
    def is_fallback(self) -> bool:
        return self.source == SOURCE_FALLBACK


def normalize_collection_path(path: str) -> str:
    """Server path with exactly one leading and one trailing slash."""
    path = href_to_path(path or "/").strip()
    path = "/" + path.strip("/")
    return path if path == "/" else path + "/"


def is_task_collection_href(href: str, root: str, extension: str = ".ics") -> bool:
    """
    Decide whether a PROPFIND entry is a task collection under ``root``.

    Args:
        href: Entry href as returned by the server (absolute or server-relative)
        root: Configured collection root
        extension: Extension of individual task resources

    Returns:
        True when the entry is a child collection of the root
    """
    raw_path = href_to_path(href)
    if extension and raw_path.rstrip("/").lower().endswith(extension.lower()):
        return False

    path = normalize_collection_path(raw_path)
    root_path = normalize_collection_path(root)
    if path == root_path:
        return False

    segments = [segment.lower() for segment in path.split("/") if segment]
    if any(segment in _SYSTEM_CONTAINERS for segment in segments):
        return False

    if root_path == "/":
        return True

    root_segment = root_path.rstrip("/")
    # The root itself, echoed back under an implementation prefix
    if path.rstrip("/").endswith(root_segment):
        return False

    return path.startswith(root_path) or f"{root_segment}/" in path


def collection_display_name(path: str) -> str:
    """Human-readable list name derived from a collection path."""
    parts = [unquote(part) for part in path.strip("/").split("/") if part]
    if not parts:
        return "Root"

    meaningful = [
        part
        for part in parts
        if part.lower() not in _DISPLAY_SKIP
        and not _UUID_LIKE.match(part)
        and part.lower() not in ("inbox", "outbox")
    ]
    if meaningful:
        return meaningful[-1]
    return parts[-1]


class CollectionDiscovery:
    """Find the task collections the sync engine should mirror."""

    def __init__(self, client: CalDAVTaskClient, root: str, extension: str = ".ics"):
        self.client = client
        self.root = normalize_collection_path(root)
        self.extension = extension

    async def discover(self, root: str | None = None) -> DiscoveryResult:
        """
        List task collections under the root.

        An empty listing is retried once against the server root; if that is
        empty too, or the server answers with something other than a usable
        multistatus, the root itself is returned as the only collection.

        Raises:
            ServerUnreachableError: if the server cannot be reached at all
        """
        root = normalize_collection_path(root or self.root)

        try:
            paths = await self._list_children(root, root)
        except ServerUnreachableError:
            raise
        except RemoteError as e:
            logger.warning(f"Collection discovery failed for {root}: {e}; using fallback")
            return DiscoveryResult(paths=[root], source=SOURCE_FALLBACK, error=str(e))

        if paths:
            logger.info(f"Discovered {len(paths)} task collection(s) under {root}")
            return DiscoveryResult(paths=paths, source=SOURCE_ROOT)

        if root != "/":
            logger.debug(f"No collections under {root}; retrying against server root")
            try:
                paths = await self._list_children("/", root)
            except ServerUnreachableError:
                raise
            except RemoteError as e:
                logger.warning(f"Server-root discovery failed: {e}; using fallback")
                return DiscoveryResult(paths=[root], source=SOURCE_FALLBACK, error=str(e))

            if paths:
                logger.info(f"Discovered {len(paths)} task collection(s) via server root")
                return DiscoveryResult(paths=paths, source=SOURCE_SERVER_ROOT)

        logger.info(f"No task collections found; using {root} as the only collection")
        return DiscoveryResult(paths=[root], source=SOURCE_FALLBACK)

    async def _list_children(self, listing_path: str, root: str) -> list[str]:
        responses = await self.client.propfind(listing_path, depth=1, body=PROPFIND_COLLECTIONS)
        return self._filter(responses, root)

    def _filter(self, responses: list[DavResponse], root: str) -> list[str]:
        paths: list[str] = []
        for response in responses:
            if response.has_resource_type and not response.is_collection:
                continue
            if not is_task_collection_href(response.href, root, self.extension):
                continue
            path = normalize_collection_path(response.href)
            if path not in paths:
                paths.append(path)
        return paths
