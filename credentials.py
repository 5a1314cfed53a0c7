"""Registry credentials helpers.

Helpers are registered, in order, on a CredentialsHelpers object that is
created once at start-up and handed to the watcher. The first enabled
helper that returns credentials for an image wins.
"""

import base64
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from events import Credentials, TrackedImage

logger = logging.getLogger(__name__)


class CredentialsNotAvailableError(Exception):
    """No helper could supply credentials for this registry."""

    def __init__(self, message: str = "no credentials available for this registry"):
        super().__init__(message)


class UnsupportedRegistryError(Exception):
    """A helper does not handle the registry of the image."""

    def __init__(self, message: str = "unsupported registry"):
        super().__init__(message)


class CredentialsHelper(ABC):

    @abstractmethod
    def get_credentials(self, image: TrackedImage) -> Optional[Credentials]:
        ...

    def is_enabled(self) -> bool:
        return True


class CredentialsHelpers:
    """Ordered chain of named credentials helpers."""

    def __init__(self):
        self._helpers: 'OrderedDict[str, CredentialsHelper]' = OrderedDict()
        self._lock = threading.RLock()

    def register(self, name: str, helper: CredentialsHelper) -> None:
        if not name:
            raise ValueError("could not register a credentials helper with an empty name")
        if helper is None:
            raise ValueError("could not register a None credentials helper")

        with self._lock:
            if name in self._helpers:
                raise ValueError(f"credentials helper '{name}' registered twice")
            self._helpers[name] = helper

        logger.info("credentials helper registered: %s", name)

    def unregister(self, name: str) -> None:
        with self._lock:
            self._helpers.pop(name, None)

    def names(self) -> List[str]:
        with self._lock:
            return list(self._helpers)

    def get_credentials(self, image: TrackedImage) -> Credentials:
        """Return the first credentials found for the image.

        Raises:
            CredentialsNotAvailableError: if no enabled helper has credentials
        """
        with self._lock:
            helpers = list(self._helpers.items())

        for name, helper in helpers:
            if not helper.is_enabled():
                continue
            try:
                found = helper.get_credentials(image)
            except UnsupportedRegistryError as e:
                logger.debug("credentials helper %s doesn't support %s: %s",
                             name, image.image.registry, e)
                continue
            except CredentialsNotAvailableError as e:
                logger.debug("credentials helper %s has no credentials for %s: %s",
                             name, image.image.remote, e)
                continue

            if found is None:
                logger.warning("credentials helper %s returned no error and no credentials", name)
                continue
            return found

        logger.debug("no credentials helper could supply credentials for %s", image.image.remote)
        raise CredentialsNotAvailableError()


class StaticCredentialsHelper(CredentialsHelper):
    """Credentials configured per registry host in the config file."""

    def __init__(self, registries: Mapping[str, Mapping[str, str]]):
        self._registries: Dict[str, Credentials] = {
            host: Credentials(cfg.get('username', ''), cfg.get('password', ''))
            for host, cfg in (registries or {}).items()
        }

    def is_enabled(self) -> bool:
        return bool(self._registries)

    def get_credentials(self, image: TrackedImage) -> Credentials:
        creds = self._registries.get(image.image.registry)
        if creds is None:
            raise UnsupportedRegistryError()
        return creds


class DockerConfigHelper(CredentialsHelper):
    """Reads the 'auths' section of a Docker config.json.

    The file is re-read on every lookup so that logins done while the
    controller runs are picked up.
    """

    def __init__(self, config_path: str = "~/.docker/config.json"):
        self.config_path = Path(os.path.expanduser(config_path))

    def is_enabled(self) -> bool:
        return self.config_path.exists()

    def _load_auths(self) -> Dict[str, Dict[str, str]]:
        try:
            with open(self.config_path, 'r') as f:
                return json.load(f).get('auths') or {}
        except (OSError, json.JSONDecodeError) as e:
            raise CredentialsNotAvailableError(f"failed to read {self.config_path}: {e}")

    def get_credentials(self, image: TrackedImage) -> Credentials:
        auths = self._load_auths()
        registry = image.image.registry

        for host, entry in auths.items():
            normalized = host.replace('https://', '').replace('http://', '').split('/', 1)[0]
            if normalized != registry and not (registry == 'index.docker.io' and 'docker.io' in normalized):
                continue
            return decode_auth_entry(entry)

        raise CredentialsNotAvailableError(f"no auth entry for {registry}")


def decode_auth_entry(entry: Mapping[str, str]) -> Credentials:
    """Decode a config.json auth entry ({'auth': base64(user:pass)} or explicit fields)."""
    if entry.get('username'):
        return Credentials(entry['username'], entry.get('password', ''))

    encoded = entry.get('auth')
    if not encoded:
        raise CredentialsNotAvailableError("auth entry has no credentials")
    try:
        decoded = base64.b64decode(encoded).decode('utf-8')
    except (ValueError, UnicodeDecodeError) as e:
        raise CredentialsNotAvailableError(f"invalid auth entry: {e}")

    username, sep, password = decoded.partition(':')
    if not sep:
        raise CredentialsNotAvailableError("auth entry is not in 'user:password' form")
    return Credentials(username, password)
