import pytest

from opentasks_sync.core.errors import DavResponseError
from opentasks_sync.sources.caldav.multistatus import href_to_path, normalize_etag, parse_multistatus

BAIKAL_LISTING = """<?xml version="1.0" encoding="utf-8"?>
<D:multistatus xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:response>
    <D:href>/dav.php/calendars/alice/</D:href>
    <D:propstat>
      <D:prop><D:resourcetype><D:collection/></D:resourcetype></D:prop>
      <D:status>HTTP/1.1 200 OK</D:status>
    </D:propstat>
  </D:response>
  <D:response>
    <D:href>https://dav.example.com/dav.php/calendars/alice/work/</D:href>
    <D:propstat>
      <D:prop>
        <D:resourcetype><D:collection/><C:calendar/></D:resourcetype>
        <D:displayname>Work</D:displayname>
      </D:prop>
      <D:status>HTTP/1.1 200 OK</D:status>
    </D:propstat>
    <D:propstat>
      <D:prop><D:getetag/></D:prop>
      <D:status>HTTP/1.1 404 Not Found</D:status>
    </D:propstat>
  </D:response>
</D:multistatus>
"""

DEFAULT_NS_REPORT = """<?xml version="1.0"?>
<multistatus xmlns="DAV:">
  <response>
    <href>/tasks/abc.ics</href>
    <propstat>
      <prop>
        <getetag>W/"123"</getetag>
        <getlastmodified>Mon, 15 Jan 2024 10:00:00 GMT</getlastmodified>
        <calendar-data xmlns="urn:ietf:params:xml:ns:caldav"><![CDATA[BEGIN:VCALENDAR
END:VCALENDAR]]></calendar-data>
      </prop>
      <status>HTTP/1.1 200 OK</status>
    </propstat>
  </response>
  <response><status>HTTP/1.1 200 OK</status></response>
</multistatus>
"""


def test_parse_prefixed_namespaces_and_absolute_hrefs():
    responses = parse_multistatus(BAIKAL_LISTING)

    assert [r.href for r in responses] == ["/dav.php/calendars/alice/", "/dav.php/calendars/alice/work/"]
    work = responses[1]
    assert work.is_collection
    assert work.resource_types == {"collection", "calendar"}
    assert work.properties["displayname"] == "Work"
    # The 404 propstat must not leak an empty getetag
    assert "getetag" not in work.properties


def test_parse_default_namespace_and_cdata():
    responses = parse_multistatus(DEFAULT_NS_REPORT.encode("utf-8"))

    assert len(responses) == 1
    entry = responses[0]
    assert entry.href == "/tasks/abc.ics"
    assert entry.etag == "123"
    assert entry.calendar_data.startswith("BEGIN:VCALENDAR")
    assert entry.last_modified.year == 2024
    assert not entry.is_collection
    assert not entry.has_resource_type


def test_parse_rejects_malformed_and_foreign_documents():
    with pytest.raises(DavResponseError):
        parse_multistatus("<multistatus")
    with pytest.raises(DavResponseError):
        parse_multistatus('<d:error xmlns:d="DAV:"/>')


def test_normalize_etag():
    assert normalize_etag('"abc"') == "abc"
    assert normalize_etag('W/"abc"') == "abc"
    assert normalize_etag("abc") == "abc"
    assert normalize_etag('""') is None
    assert normalize_etag(None) is None


def test_href_to_path():
    assert href_to_path("https://dav.example.com/a/b/") == "/a/b/"
    assert href_to_path("https://dav.example.com") == "/"
    assert href_to_path(" /a/b.ics ") == "/a/b.ics"
