"""CalDAV task source (codec, discovery, client)."""

from .client import CalDAVTaskClient, FetchResult, PutResult
from .discovery import (
    CollectionDiscovery,
    DiscoveryResult,
    collection_display_name,
    is_task_collection_href,
    normalize_collection_path,
)
from .ical_codec import parse_task, serialize_task
from .multistatus import DavResponse, parse_multistatus

__all__ = [
    "CalDAVTaskClient",
    "FetchResult",
    "PutResult",
    "CollectionDiscovery",
    "DiscoveryResult",
    "collection_display_name",
    "is_task_collection_href",
    "normalize_collection_path",
    "parse_task",
    "serialize_task",
    "DavResponse",
    "parse_multistatus",
]
