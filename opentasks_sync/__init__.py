"""opentasks-sync: bidirectional CalDAV synchronisation for a personal task store."""

from opentasks_sync.version import get_version

__version__ = get_version()
