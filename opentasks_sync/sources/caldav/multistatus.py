"""Structured parsing of WebDAV 207 Multi-Status bodies.

Servers disagree on namespace prefixes (``D:``, ``d:``, default namespace),
on whether ``href`` is absolute or server-relative, and on whether calendar
data is wrapped in CDATA. ElementTree resolves the namespaces; everything
else is normalised here into a flat list of :class:`DavResponse` entries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parsedate_to_datetime
from urllib.parse import urlsplit
from xml.etree import ElementTree as ET

from opentasks_sync.core.errors import DavResponseError

logger = logging.getLogger(__name__)

DAV_NS = "DAV:"
CALDAV_NS = "urn:ietf:params:xml:ns:caldav"


@dataclass
class DavResponse:
    """One ``<response>`` entry with the properties that came back with status 2xx."""

    href: str
    status: int | None = None
    properties: dict[str, str | None] = field(default_factory=dict)
    resource_types: set[str] = field(default_factory=set)
    has_resource_type: bool = False

    @property
    def is_collection(self) -> bool:
        return "collection" in self.resource_types

    @property
    def etag(self) -> str | None:
        return normalize_etag(self.properties.get("getetag"))

    @property
    def calendar_data(self) -> str | None:
        return self.properties.get("calendar-data")

    @property
    def last_modified(self) -> datetime | None:
        value = self.properties.get("getlastmodified")
        if not value:
            return None
        try:
            return parsedate_to_datetime(value)
        except (TypeError, ValueError):
            logger.debug("Unparseable getlastmodified: %r", value)
            return None


def normalize_etag(value: str | None) -> str | None:
    """Strip weak markers and surrounding quotes so header and body ETags compare equal."""
    if value is None:
        return None
    value = value.strip()
    if value.startswith("W/"):
        value = value[2:]
    value = value.strip('"')
    return value or None


def href_to_path(href: str) -> str:
    """Reduce an absolute or relative href to its server path."""
    href = href.strip()
    if "://" in href:
        return urlsplit(href).path or "/"
    return href


def parse_multistatus(body: str | bytes) -> list[DavResponse]:
    """
    Parse a multistatus document.

    Args:
        body: Raw response body

    Returns:
        One entry per ``<response>`` element, in document order

    Raises:
        DavResponseError: if the body is not well-formed XML or not a multistatus
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise DavResponseError(f"Malformed multistatus body: {e}") from e

    if _local_name(root.tag) != "multistatus":
        raise DavResponseError(f"Expected multistatus, got <{_local_name(root.tag)}>")

    responses: list[DavResponse] = []
    for response_el in root:
        if _local_name(response_el.tag) != "response":
            continue

        href_el = _find_child(response_el, "href")
        if href_el is None or not (href_el.text or "").strip():
            logger.debug("Skipping multistatus response without href")
            continue

        entry = DavResponse(href=href_to_path(href_el.text))

        status_el = _find_child(response_el, "status")
        if status_el is not None:
            entry.status = _parse_status(status_el.text)

        for propstat in response_el:
            if _local_name(propstat.tag) != "propstat":
                continue
            propstat_status = _parse_status(_child_text(propstat, "status"))
            if propstat_status is not None and not 200 <= propstat_status < 300:
                continue
            prop_el = _find_child(propstat, "prop")
            if prop_el is None:
                continue
            _collect_properties(prop_el, entry)

        responses.append(entry)

    return responses


def _collect_properties(prop_el: ET.Element, entry: DavResponse) -> None:
    for prop in prop_el:
        name = _local_name(prop.tag)
        if name == "resourcetype":
            entry.has_resource_type = True
            entry.resource_types.update(_local_name(child.tag) for child in prop)
            continue
        text = prop.text.strip() if prop.text is not None else None
        entry.properties[name] = text or None


def _parse_status(text: str | None) -> int | None:
    # "HTTP/1.1 200 OK"
    if not text:
        return None
    parts = text.split()
    if len(parts) >= 2 and parts[1].isdigit():
        return int(parts[1])
    return None


def _local_name(tag: str) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1].lower()


def _find_child(element: ET.Element, name: str) -> ET.Element | None:
    for child in element:
        if _local_name(child.tag) == name:
            return child
    return None


def _child_text(element: ET.Element, name: str) -> str | None:
    child = _find_child(element, name)
    return child.text if child is not None else None
