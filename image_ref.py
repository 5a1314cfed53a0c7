"""Image reference parsing.

Turns strings such as 'nginx', 'foo/bar:1.1', 'gcr.io/project/app:2.0' or
'localhost:5000/app@sha256:...' into a normalized ImageReference.
"""

import re
from dataclasses import dataclass

DEFAULT_REGISTRY = "index.docker.io"
DEFAULT_NAMESPACE = "library"
DEFAULT_TAG = "latest"
DEFAULT_SCHEME = "https"

_DOCKER_HUB_ALIASES = {"docker.io", "index.docker.io", "registry-1.docker.io", "registry.hub.docker.com"}

_PATH_COMPONENT = r'[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*'
_PATH_RE = re.compile(rf'^{_PATH_COMPONENT}(?:/{_PATH_COMPONENT})*$')
_TAG_RE = re.compile(r'^[\w][\w.-]{0,127}$')
_DIGEST_RE = re.compile(r'^[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}$')


class InvalidImageReferenceError(ValueError):
    """Raised when an image reference cannot be parsed."""


@dataclass(frozen=True)
class ImageReference:
    registry: str
    short_name: str
    tag: str
    scheme: str = DEFAULT_SCHEME
    is_digest: bool = False

    @property
    def repository(self) -> str:
        """Registry and name, e.g. index.docker.io/foo/bar"""
        return f"{self.registry}/{self.short_name}"

    @property
    def separator(self) -> str:
        return '@' if self.is_digest else ':'

    @property
    def name(self) -> str:
        """Name and tag without the registry, e.g. foo/bar:1.1"""
        return f"{self.short_name}{self.separator}{self.tag}"

    @property
    def remote(self) -> str:
        """Full reference, e.g. index.docker.io/foo/bar:1.1"""
        return f"{self.repository}{self.separator}{self.tag}"

    @property
    def registry_url(self) -> str:
        return f"{self.scheme}://{self.registry}"

    def with_tag(self, tag: str) -> 'ImageReference':
        return ImageReference(self.registry, self.short_name, tag, self.scheme)

    def __str__(self):
        return self.remote


def parse_image(image: str) -> ImageReference:
    """
    Parse an image reference.

    Args:
        image: Image reference (e.g., 'ubuntu', 'linuxserver/calibre:1.2', 'gcr.io/project/image')

    Returns:
        ImageReference with Docker Hub defaults applied

    Raises:
        InvalidImageReferenceError: if the reference is malformed
    """
    remote = (image or '').strip()
    if not remote:
        raise InvalidImageReferenceError("image reference cannot be empty")

    scheme = DEFAULT_SCHEME
    for prefix in ('http://', 'https://'):
        if remote.startswith(prefix):
            scheme = prefix[:-3]
            remote = remote[len(prefix):]
            break

    # Strip digest qualifier (@sha256:...)
    digest = ''
    at_pos = remote.find('@')
    if at_pos != -1:
        remote, digest = remote[:at_pos], remote[at_pos + 1:]
        if not _DIGEST_RE.match(digest):
            raise InvalidImageReferenceError(f"invalid digest in '{image}'")

    # Strip tag, but only when the colon is in the *tag* position
    # (after the last slash), not in a registry:port position.
    tag = ''
    last_slash = remote.rfind('/')
    last_colon = remote.rfind(':')
    if last_colon > last_slash:
        remote, tag = remote[:last_colon], remote[last_colon + 1:]
        if not _TAG_RE.match(tag):
            raise InvalidImageReferenceError(f"invalid tag '{tag}' in '{image}'")

    # The first path component is a registry if it contains a dot, a colon
    # (port), or is literally "localhost".
    parts = remote.split('/', 1)
    first = parts[0]
    if len(parts) > 1 and ('.' in first or ':' in first or first == 'localhost'):
        registry, path = first, parts[1]
    else:
        registry, path = DEFAULT_REGISTRY, remote

    if registry in _DOCKER_HUB_ALIASES:
        registry = DEFAULT_REGISTRY
        # Implicit library namespace: postgres -> library/postgres
        if '/' not in path:
            path = f"{DEFAULT_NAMESPACE}/{path}"

    if not _PATH_RE.match(path):
        raise InvalidImageReferenceError(f"invalid repository name '{path}' in '{image}'")

    if digest:
        return ImageReference(registry, path, digest, scheme, is_digest=True)
    return ImageReference(registry, path, tag or DEFAULT_TAG, scheme)
