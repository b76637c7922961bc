"""
Registry Adapter for Docker Image Update Detection

Speaks the Docker Registry v2 HTTP API:
- /v2/ request to discover whether (and how) a registry wants authentication
- Bearer token acquisition from the advertised realm (anonymous or Basic-authenticated)
- Manifest digest resolution (HEAD, GET fallback)
- Tag listing with Link-header pagination

Transient failures (connection errors, timeouts, 429, 5xx) are retried with
exponential backoff and jitter. 401/404 are never retried.
"""

import aiohttp
import asyncio
import json
import logging
import random
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import parse_qsl, urljoin, urlsplit, urlunsplit

from config.settings import UpdaterConfig
from updates.errors import AuthError, NetworkError, UnauthorizedError
from updates.reference import DEFAULT_REGISTRY, normalize_registry_host, normalize_repository
from updates.types import AuthDetails, AuthMethod
from utils.registry_credentials import Credential, credentials_for_host, encode_basic_auth

logger = logging.getLogger(__name__)

DOCKER_HUB_URL = "https://index.docker.io"
DOCKER_HUB_AUTH_HOST = "auth.docker.io"
DOCKER_HUB_SERVICE = "registry.docker.io"

CONTENT_DIGEST_HEADER = "Docker-Content-Digest"
CHALLENGE_HEADER = "WWW-Authenticate"

MANIFEST_ACCEPT_TYPES = (
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.docker.distribution.manifest.v1+json",
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.oci.image.manifest.v1+json",
)

USER_AGENT = "Refit"

# Registries that don't support HEAD on manifests answer with one of these
HEAD_FALLBACK_STATUSES = (403, 404, 405)

_LINK_NEXT_REGEX = re.compile(r'<([^>]+)>\s*;[^,]*rel="?next"?')


@dataclass
class RetryPolicy:
    """
    Policy for retrying transient registry failures.

    max_attempts counts the first try (1 = no retry).
    """
    max_attempts: int = 3                   # Maximum attempts
    initial_delay: float = 0.5              # Initial delay in seconds
    max_delay: float = 10.0                 # Maximum delay in seconds
    backoff_multiplier: float = 2.0         # Exponential backoff multiplier
    jitter: bool = True                     # Add randomization to prevent thundering herd

    @classmethod
    def from_config(cls, config: UpdaterConfig) -> 'RetryPolicy':
        return cls(
            max_attempts=config.retry_attempts,
            initial_delay=config.retry_initial_delay,
            max_delay=config.retry_max_delay,
            backoff_multiplier=config.retry_backoff_multiplier,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following `attempt` (1-based)."""
        delay = min(
            self.initial_delay * (self.backoff_multiplier ** (attempt - 1)),
            self.max_delay
        )
        if self.jitter:
            delay *= (0.5 + random.random())  # 0.5x - 1.5x jitter
        return delay

    @staticmethod
    def is_retryable_status(status: int) -> bool:
        return status == 429 or 500 <= status < 600


@dataclass
class RegistryResponse:
    """Fully-read registry response (body consumed before the connection is released)."""
    status: int
    headers: Dict[str, str]
    body: bytes
    url: str

    def header(self, name: str) -> str:
        # Header lookup is case-insensitive
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return ""


def build_auth_header(token: str) -> str:
    """
    Build an Authorization header value from a token.

    A token that already carries a scheme (Bearer/Basic) is used as-is,
    otherwise Bearer is assumed.
    """
    value = (token or "").strip()
    if not value:
        return ""
    lowered = value.lower()
    if lowered.startswith("bearer ") or lowered.startswith("basic "):
        return value
    return f"Bearer {value}"


def parse_auth_challenge(header: str) -> Tuple[str, str]:
    """
    Extract (realm, service) from a Bearer WWW-Authenticate challenge.

    Returns ("", "") for non-Bearer challenges.

    Example:
        'Bearer realm="https://ghcr.io/token",service="ghcr.io",scope="repository:user/app:pull"'
        → ("https://ghcr.io/token", "ghcr.io")
    """
    if not header:
        return "", ""
    value = header.strip()
    lowered = value.lower()
    # Some registries send several challenges; start at the Bearer one
    idx = lowered.find("bearer ")
    if idx < 0:
        return "", ""
    params = value[idx + len("bearer "):]

    realm = service = ""
    for part in params.split(","):
        part = part.strip()
        key, _, raw = part.partition("=")
        key = key.strip().lower()
        if key == "realm":
            realm = raw.strip().strip('"')
        elif key == "service":
            service = raw.strip().strip('"')
    return realm, service


def service_name(auth_url: str) -> str:
    """Derive the token service name from the realm URL."""
    if DOCKER_HUB_AUTH_HOST in auth_url:
        return DOCKER_HUB_SERVICE
    host = urlsplit(auth_url).netloc
    return host or "registry"


def append_service(realm: str, service: str) -> str:
    """Append service=<service> to the realm unless it already carries one."""
    if not service or "service=" in realm:
        return realm
    separator = "&" if "?" in realm else "?"
    return f"{realm}{separator}service={service}"


def parse_next_link(header: str) -> str:
    """Return the URL of the rel="next" entry of a Link header, or ""."""
    if not header:
        return ""
    match = _LINK_NEXT_REGEX.search(header)
    return match.group(1) if match else ""


class RegistryClient:
    """
    Async Docker Registry v2 client.

    One client (and one aiohttp session) is shared by every worker of a batch
    check. Use as an async context manager or call close() when done.
    """

    def __init__(self, config: Optional[UpdaterConfig] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        self.config = config or UpdaterConfig()
        self.retry_policy = RetryPolicy.from_config(self.config)
        self._insecure = {normalize_registry_host(h) for h in self.config.insecure_registries}
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> 'RegistryClient':
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.registry_timeout),
                headers={"User-Agent": USER_AGENT},
            )
            self._owns_session = True
        return self._session

    def registry_url(self, registry: str) -> str:
        """
        Base URL for a registry host.

        docker.io → https://index.docker.io, insecure hosts → http://<host>,
        everything else → https://<host>.
        """
        if registry.startswith("http://") or registry.startswith("https://"):
            return registry.rstrip("/")
        host = normalize_registry_host(registry)
        if host == DEFAULT_REGISTRY:
            return DOCKER_HUB_URL
        scheme = "http" if host in self._insecure else "https"
        return f"{scheme}://{host}"

    # ==================== Transport ====================

    async def _request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[List[Tuple[str, str]]] = None,
    ) -> RegistryResponse:
        """
        Perform one registry request with retry on transient failures.

        Returns the last response for HTTP errors (including exhausted 429/5xx),
        raises NetworkError when the registry cannot be reached at all.
        """
        policy = self.retry_policy
        last_error: Optional[Exception] = None

        for attempt in range(1, policy.max_attempts + 1):
            try:
                session = self._get_session()
                async with session.request(method, url, headers=headers, params=params,
                                           allow_redirects=True) as resp:
                    body = await resp.read() if method != "HEAD" else b""
                    response = RegistryResponse(
                        status=resp.status,
                        headers=dict(resp.headers),
                        body=body,
                        url=str(resp.url),
                    )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = e
                if attempt >= policy.max_attempts:
                    break
                delay = policy.delay_for(attempt)
                logger.info(f"Retrying {method} {url} after {delay:.2f}s "
                            f"(attempt {attempt}/{policy.max_attempts}, error: {type(e).__name__})")
                await asyncio.sleep(delay)
                continue

            if policy.is_retryable_status(response.status) and attempt < policy.max_attempts:
                delay = policy.delay_for(attempt)
                logger.info(f"Retrying {method} {url} after {delay:.2f}s "
                            f"(attempt {attempt}/{policy.max_attempts}, status: {response.status})")
                await asyncio.sleep(delay)
                continue

            return response

        message = str(last_error) or type(last_error).__name__
        raise NetworkError(f"{method} {url} failed: {message}", retryable=True)

    # ==================== Authentication ====================

    async def check_auth(self, registry: str) -> str:
        """
        Query /v2/ and return the token URL (realm + service) if auth is required.

        Returns "" when the registry answers without a Bearer challenge.

        Raises:
            NetworkError: registry unreachable
        """
        url = f"{self.registry_url(registry)}/v2/"
        response = await self._request("GET", url)

        if response.status == 401:
            challenge = response.header(CHALLENGE_HEADER)
            if challenge:
                realm, service = parse_auth_challenge(challenge)
                if realm:
                    return append_service(realm, service)
        return ""

    async def get_token_multi(
        self,
        auth_url: str,
        repositories: Iterable[str],
        creds: Optional[Tuple[str, str]] = None,
    ) -> str:
        """
        Fetch one Bearer token covering pull scope on every repository.

        Args:
            auth_url: Realm URL (may already carry service=)
            repositories: Normalized repository paths (e.g. "library/nginx")
            creds: Optional (username, password) sent as HTTP Basic auth

        Raises:
            AuthError: non-200 answer or no token in the body
            NetworkError: token endpoint unreachable
        """
        parts = urlsplit(auth_url)
        params = parse_qsl(parts.query, keep_blank_values=True)
        if not any(key == "service" and value for key, value in params):
            params = [(k, v) for k, v in params if k != "service"]
            params.append(("service", service_name(auth_url)))
        for repo in repositories:
            params.append(("scope", f"repository:{repo}:pull"))
        base = urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))

        headers = {}
        if creds and creds[0] and creds[1]:
            headers["Authorization"] = aiohttp.BasicAuth(creds[0], creds[1]).encode()

        response = await self._request("GET", base, headers=headers, params=params)
        if response.status != 200:
            raise AuthError(f"token request failed with status: {response.status}")

        try:
            data = json.loads(response.body.decode("utf-8") or "{}")
        except (ValueError, UnicodeDecodeError) as e:
            raise AuthError(f"invalid token response: {e}")

        token = data.get("token") or data.get("access_token") or ""
        if not token:
            raise AuthError("token endpoint returned an empty token")
        return token

    async def get_token(self, auth_url: str, repository: str,
                        creds: Optional[Tuple[str, str]] = None) -> str:
        return await self.get_token_multi(auth_url, [repository], creds)

    async def acquire_token(
        self,
        auth_url: str,
        registry: str,
        repositories: List[str],
        credentials: Iterable[Credential],
    ) -> Tuple[str, AuthDetails]:
        """
        Get a token for the repositories: anonymous first, then each matching credential.

        Credential tokens are decrypted just before use.

        Raises:
            AuthError: every attempt failed
        """
        host = normalize_registry_host(registry)
        try:
            token = await self.get_token_multi(auth_url, repositories)
            return token, AuthDetails(method=AuthMethod.ANONYMOUS.value, registry=host)
        except (AuthError, NetworkError) as e:
            last_error: Exception = e
            logger.debug(f"Anonymous token request for {host} failed: {e}")

        for cred in credentials_for_host(credentials, host):
            try:
                password = cred.plaintext_token()
            except (ValueError, IOError) as e:
                last_error = e
                continue
            try:
                token = await self.get_token_multi(auth_url, repositories, (cred.username, password))
                return token, AuthDetails(
                    method=AuthMethod.CREDENTIAL.value,
                    username=cred.username,
                    registry=host,
                    used_credential=True,
                )
            except (AuthError, NetworkError) as e:
                last_error = e

        raise AuthError(f"failed to get registry token: {last_error}", registry=host)

    async def resolve_auth_header(
        self,
        registry: str,
        repository: str,
        tag: str,
        credentials: Iterable[Credential],
    ) -> Tuple[str, str, str]:
        """
        One-shot re-authentication after a 401.

        Queries /v2/ and answers the challenge it advertises.

        Returns:
            (header, method, username) where method is "none", "basic" or "bearer"

        Raises:
            AuthError: challenge could not be satisfied
        """
        host = normalize_registry_host(registry)
        credentials = list(credentials)
        response = await self._request("GET", f"{self.registry_url(host)}/v2/",
                                        headers={"Accept": "*/*"})
        challenge = response.header(CHALLENGE_HEADER).strip()

        if response.status == 200 or not challenge:
            return "", AuthMethod.NONE.value, ""

        lowered = challenge.lower()
        if lowered.startswith("basic"):
            for cred in credentials_for_host(credentials, host):
                try:
                    password = cred.plaintext_token()
                except (ValueError, IOError):
                    continue
                return encode_basic_auth(cred.username, password), AuthMethod.BASIC.value, cred.username
            raise AuthError(f"no credentials available for basic auth at {host}", registry=host)

        if "bearer" in lowered:
            realm, service = parse_auth_challenge(challenge)
            if not realm:
                raise AuthError("invalid challenge", registry=host)
            repo = normalize_repository(host, repository)
            token, details = await self.acquire_token(append_service(realm, service), host, [repo], credentials)
            return f"Bearer {token}", AuthMethod.BEARER.value, details.username or ""

        raise AuthError(f"unsupported challenge type from registry: {challenge!r}", registry=host)

    # ==================== Manifests & tags ====================

    async def get_latest_digest(self, registry: str, repository: str, tag: str, token: str = "") -> str:
        """
        Resolve repository:tag to its current manifest digest.

        Raises:
            UnauthorizedError: 401 (carries the challenge)
            NetworkError: other non-200 status, missing digest, unreachable
        """
        url = f"{self.registry_url(registry)}/v2/{repository}/manifests/{tag}"
        headers = {"Accept": ", ".join(MANIFEST_ACCEPT_TYPES)}
        auth_header = build_auth_header(token)
        if auth_header:
            headers["Authorization"] = auth_header

        response = await self._request("HEAD", url, headers=headers)
        if response.status in HEAD_FALLBACK_STATUSES:
            logger.debug(f"HEAD {url} returned {response.status}, retrying with GET")
            response = await self._request("GET", url, headers=headers)

        if response.status == 401:
            challenge = response.header(CHALLENGE_HEADER)
            raise UnauthorizedError(
                f"unauthorized: {challenge}" if challenge else "manifest request failed with status: 401",
                registry=registry,
                challenge=challenge or None,
            )
        if response.status != 200:
            www = response.header(CHALLENGE_HEADER) or "not present"
            raise NetworkError(
                f"manifest request failed with status: {response.status}, auth: {www!r}",
                status=response.status,
                retryable=RetryPolicy.is_retryable_status(response.status),
            )

        digest = response.header(CONTENT_DIGEST_HEADER)
        if not digest:
            etag = response.header("ETag").strip('"')
            if etag.startswith("sha256:"):
                digest = etag
        if not digest:
            raise NetworkError("no digest header found in response", status=response.status)

        logger.debug(f"Resolved {registry}/{repository}:{tag} → {digest[:19]}...")
        return digest

    async def get_image_tags(self, registry: str, repository: str, token: str = "") -> List[str]:
        """
        List all tags of a repository, following Link pagination.

        Raises:
            UnauthorizedError: 401
            NetworkError: other non-200 status or invalid body
        """
        base_url = self.registry_url(registry)
        next_url = f"{base_url}/v2/{repository}/tags/list"
        headers = {"Accept": "application/json"}
        auth_header = build_auth_header(token)
        if auth_header:
            headers["Authorization"] = auth_header

        tags: List[str] = []
        seen_urls = set()
        while next_url and next_url not in seen_urls:
            seen_urls.add(next_url)
            response = await self._request("GET", next_url, headers=headers)

            if response.status == 401:
                challenge = response.header(CHALLENGE_HEADER)
                raise UnauthorizedError(
                    f"unauthorized: {challenge}" if challenge else "tags request failed with status: 401",
                    registry=registry,
                    challenge=challenge or None,
                )
            if response.status != 200:
                raise NetworkError(f"tags request failed with status: {response.status}",
                                   status=response.status)

            try:
                body = json.loads(response.body.decode("utf-8") or "{}")
            except (ValueError, UnicodeDecodeError) as e:
                raise NetworkError(f"invalid tags response: {e}")
            tags.extend(body.get("tags") or [])

            link = parse_next_link(response.header("Link"))
            # Registries usually return the next page as a path
            next_url = urljoin(base_url + "/", link) if link else ""

        return tags
