"""Docker Registry HTTP API v2 client.

Only the two calls the watcher needs: a manifest digest for a tag and the
tag list of a repository.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import urljoin

import requests

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30
DOCKER_HUB_HOST = "index.docker.io"
DOCKER_HUB_API_HOST = "registry-1.docker.io"
MAX_TAG_PAGES = 50
MANIFEST_ACCEPT_HEADER = (
    "application/vnd.docker.distribution.manifest.list.v2+json,"
    "application/vnd.docker.distribution.manifest.v2+json,"
    "application/vnd.oci.image.index.v1+json,"
    "application/vnd.oci.image.manifest.v1+json"
)

_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


class RegistryError(Exception):
    """A registry request failed."""


@dataclass
class RegistryOpts:
    registry: str  # base URL, e.g. https://index.docker.io
    name: str      # repository short name, e.g. library/nginx
    tag: str = ''
    username: str = ''
    password: str = ''

    def __repr__(self):
        return (f"RegistryOpts(registry={self.registry!r}, name={self.name!r}, tag={self.tag!r}, "
                f"username={self.username!r}, password={'*' * len(self.password)!r})")


@dataclass
class RepositoryTags:
    name: str
    tags: List[str] = field(default_factory=list)


def _parse_challenge(header: str) -> Dict[str, str]:
    scheme, _, params = header.partition(' ')
    parsed = {k.lower(): v for k, v in _CHALLENGE_PARAM_RE.findall(params)}
    parsed['scheme'] = scheme.lower()
    return parsed


class RegistryClient:
    def __init__(self, timeout: int = REQUEST_TIMEOUT, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self._session = session or requests.Session()

    def _base_url(self, registry: str) -> str:
        url = registry.rstrip('/')
        if '://' not in url:
            url = f"https://{url}"
        return url.replace(f"://{DOCKER_HUB_HOST}", f"://{DOCKER_HUB_API_HOST}")

    def _get_token(self, challenge: Dict[str, str], opts: RegistryOpts) -> Optional[str]:
        """
        Get a bearer token for the scope the registry asked for.

        Args:
            challenge: Parsed WWW-Authenticate header
            opts: Request options carrying optional basic auth credentials

        Returns:
            Authentication token or None
        """
        realm = challenge.get('realm')
        if not realm:
            return None

        params = {}
        if challenge.get('service'):
            params['service'] = challenge['service']
        params['scope'] = challenge.get('scope') or f"repository:{opts.name}:pull"

        auth = (opts.username, opts.password) if opts.username else None
        try:
            response = self._session.get(realm, params=params, auth=auth, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            raise RegistryError(f"failed to get token for {opts.name}: {e}")

        return body.get('token') or body.get('access_token')

    def _request(self, method: str, url: str, opts: RegistryOpts,
                 headers: Optional[Dict[str, str]] = None) -> requests.Response:
        headers = dict(headers or {})
        try:
            response = self._session.request(method, url, headers=headers, timeout=self.timeout)

            if response.status_code == 401:
                challenge = _parse_challenge(response.headers.get('WWW-Authenticate', ''))
                if challenge['scheme'] == 'bearer':
                    token = self._get_token(challenge, opts)
                    if token:
                        headers['Authorization'] = f'Bearer {token}'
                    response = self._session.request(method, url, headers=headers, timeout=self.timeout)
                elif challenge['scheme'] == 'basic' and opts.username:
                    response = self._session.request(method, url, headers=headers,
                                                     auth=(opts.username, opts.password),
                                                     timeout=self.timeout)

            response.raise_for_status()
            return response
        except requests.RequestException as e:
            raise RegistryError(f"{method} {url} failed: {e}")

    def digest(self, opts: RegistryOpts) -> str:
        """
        Get the manifest digest of a tag using a HEAD request.

        For multi-arch images this is the digest of the manifest list, which
        is what changes when any platform image is rebuilt.

        Raises:
            RegistryError: if the registry cannot be reached or has no digest
        """
        url = f"{self._base_url(opts.registry)}/v2/{opts.name}/manifests/{opts.tag}"
        response = self._request('HEAD', url, opts, headers={'Accept': MANIFEST_ACCEPT_HEADER})

        digest = response.headers.get('Docker-Content-Digest')
        if not digest:
            raise RegistryError(f"registry returned no digest for {opts.name}:{opts.tag}")
        return digest

    def get(self, opts: RegistryOpts) -> RepositoryTags:
        """
        Get all available tags of a repository, following pagination links.

        Raises:
            RegistryError: if any page cannot be fetched
        """
        base = self._base_url(opts.registry)
        url: Optional[str] = f"{base}/v2/{opts.name}/tags/list"
        tags: List[str] = []

        for _ in range(MAX_TAG_PAGES):
            if not url:
                break
            response = self._request('GET', url, opts)
            try:
                tags.extend(response.json().get('tags') or [])
            except ValueError as e:
                raise RegistryError(f"invalid tag list for {opts.name}: {e}")

            next_link = response.links.get('next', {}).get('url')
            url = urljoin(base, next_link) if next_link else None

        if url:
            logger.warning("tag list for %s truncated after %d pages", opts.name, MAX_TAG_PAGES)

        return RepositoryTags(name=opts.name, tags=tags)
