"""Keyring-backed storage for the CalDAV account password.

Passwords live in the operating system keyring under one service name, keyed
by ``caldav:<username>`` so a future second account type cannot collide.
"""

import logging

import keyring
import keyring.errors

logger = logging.getLogger(__name__)

SERVICE_NAME = "opentasks-sync"


class CredentialStore:
    """Read and write the CalDAV password for a username."""

    def __init__(self, service_name: str = SERVICE_NAME):
        self.service_name = service_name

    @staticmethod
    def _entry(username: str) -> str:
        return f"caldav:{username}"

    def set_caldav_password(self, username: str, password: str) -> None:
        """Save ``password`` for ``username``.

        Raises:
            keyring.errors.KeyringError: The backend refused the write. The
                CLI reports this to the user rather than silently continuing.
        """
        keyring.set_password(self.service_name, self._entry(username), password)
        logger.info(f"Saved CalDAV password for {username} in keyring")

    def get_caldav_password(self, username: str) -> str | None:
        """Look up the saved password, or None when the keyring has none.

        A broken or locked backend is treated the same as a missing entry so
        callers can fall back to a password from configuration.
        """
        try:
            secret = keyring.get_password(self.service_name, self._entry(username))
        except keyring.errors.KeyringError as exc:
            logger.warning(f"Keyring lookup for {username} failed: {exc}")
            return None

        if secret is None:
            logger.debug(f"Keyring has no CalDAV password for {username}")
        return secret

    def delete_caldav_password(self, username: str) -> bool:
        """Forget the saved password. Returns False if nothing was removed."""
        try:
            keyring.delete_password(self.service_name, self._entry(username))
        except keyring.errors.PasswordDeleteError:
            logger.debug(f"Keyring has no CalDAV password to delete for {username}")
            return False
        except keyring.errors.KeyringError as exc:
            logger.error(f"Could not delete CalDAV password for {username}: {exc}")
            return False

        logger.info(f"Deleted CalDAV password for {username} from keyring")
        return True

    def has_caldav_password(self, username: str) -> bool:
        return self.get_caldav_password(username) is not None
