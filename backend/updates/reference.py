"""
Image Reference Parser

Normalizes image strings into (registry, repository, tag).

Two parsers are provided:
- A strict parser built on the Docker distribution reference grammar
  (lower-case path components, validated tags and digests).
- A lenient fallback built on the docker SDK's own helpers
  (parse_repository_tag / split_repo_name) for strings the grammar rejects,
  e.g. upper-case repository names written by hand in compose files.

Both produce identical results for every well-formed reference.

Examples:
    redis:latest              → (docker.io, library/redis, latest)
    traefik/traefik:v2.10     → (docker.io, traefik/traefik, v2.10)
    gcr.io/project/app:v1     → (gcr.io, project/app, v1)
    alpine@sha256:deadbeef    → (docker.io, library/alpine, latest)
"""

import logging
import re
from dataclasses import dataclass

from docker.auth import split_repo_name
from docker.utils import parse_repository_tag

from updates.errors import ParseError

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "docker.io"
DEFAULT_TAG = "latest"
OFFICIAL_REPO_PREFIX = "library/"

# Hostnames that all refer to Docker Hub
DOCKER_HUB_ALIASES = ("docker.io", "registry-1.docker.io", "index.docker.io")

# Distribution reference grammar
_ALPHANUMERIC = r"[a-z0-9]+"
_SEPARATOR = r"(?:[._]|__|[-]+)"
_PATH_COMPONENT = rf"{_ALPHANUMERIC}(?:{_SEPARATOR}{_ALPHANUMERIC})*"
_DOMAIN_COMPONENT = r"(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])"
_DOMAIN_NAME = rf"{_DOMAIN_COMPONENT}(?:\.{_DOMAIN_COMPONENT})*"
_IPV6 = r"\[(?:[a-fA-F0-9:]+)\]"
_DOMAIN = rf"(?:{_DOMAIN_NAME}|{_IPV6})(?::[0-9]+)?"
_TAG = r"[\w][\w.-]{0,127}"
_DIGEST = r"[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}"
_NAME = rf"(?:{_DOMAIN}/)?{_PATH_COMPONENT}(?:/{_PATH_COMPONENT})*"

REFERENCE_REGEX = re.compile(rf"^({_NAME})(?::({_TAG}))?(?:@({_DIGEST}))?$")
ANCHORED_IDENTIFIER_REGEX = re.compile(r"^[a-f0-9]{64}$")

NAME_TOTAL_LENGTH_MAX = 255


@dataclass(frozen=True)
class ImageReference:
    """Normalized image reference. Derived, never persisted."""
    registry: str
    repository: str
    tag: str

    @property
    def name(self) -> str:
        """Fully-qualified repository name without tag."""
        return f"{self.registry}/{self.repository}"

    def __str__(self) -> str:
        return f"{self.registry}/{self.repository}:{self.tag}"


def normalize_registry_host(url: str) -> str:
    """
    Normalize a registry URL or hostname for comparison.

    Strips scheme and any path, lower-cases, and collapses the Docker Hub
    aliases into "docker.io".

    Examples:
        https://Index.Docker.io/  → docker.io
        https://index.docker.io/v1/ → docker.io
        http://registry.local:5000 → registry.local:5000
    """
    host = (url or "").strip().lower()
    for scheme in ("https://", "http://"):
        if host.startswith(scheme):
            host = host[len(scheme):]
    host = host.split("/", 1)[0]
    if host in DOCKER_HUB_ALIASES:
        return DEFAULT_REGISTRY
    return host


def normalize_repository(registry: str, repository: str) -> str:
    """Prefix single-segment Docker Hub repositories with library/."""
    if normalize_registry_host(registry) == DEFAULT_REGISTRY and "/" not in repository:
        return OFFICIAL_REPO_PREFIX + repository
    return repository


def is_digest_pinned(ref: str) -> bool:
    """True if the reference pins a manifest digest (name@sha256:...)."""
    return "@sha256:" in (ref or "")


def _split_domain(name: str):
    """
    Split a grammar-valid name into (domain, remainder).

    The first path segment is a domain only if it contains '.' or ':',
    is 'localhost', or contains upper-case characters.
    """
    first, sep, rest = name.partition("/")
    if not sep or (
        "." not in first and ":" not in first
        and first != "localhost" and first.lower() == first
    ):
        return DEFAULT_REGISTRY, name
    return first, rest


def _finalize(registry: str, repository: str, tag: str) -> ImageReference:
    registry = normalize_registry_host(registry)
    return ImageReference(
        registry=registry,
        repository=normalize_repository(registry, repository),
        tag=tag,
    )


def parse_with_grammar(ref: str) -> ImageReference:
    """
    Strict parse using the distribution reference grammar.

    Raises:
        ParseError: if ref does not match the grammar
    """
    match = REFERENCE_REGEX.match(ref)
    if not match:
        raise ParseError(f"Reference does not match grammar: {ref}", ref)

    name, tag, digest = match.group(1), match.group(2), match.group(3)
    if len(name) > NAME_TOTAL_LENGTH_MAX:
        raise ParseError(f"Repository name too long: {ref}", ref)

    domain, remainder = _split_domain(name)
    if ANCHORED_IDENTIFIER_REGEX.match(remainder):
        raise ParseError(f"Repository name cannot be a 64-byte hex string: {ref}", ref)

    # Digest-pinned references bypass tag-based updates; they resolve to latest
    if digest or not tag:
        tag = DEFAULT_TAG
    return _finalize(domain, remainder, tag)


def parse_fallback(ref: str) -> ImageReference:
    """
    Lenient parse using the docker SDK helpers.

    Accepts references the strict grammar refuses (upper-case repository
    names, short digests) but still rejects empty components and whitespace.

    Raises:
        ParseError: if ref is genuinely unparsable
    """
    if any(ch.isspace() for ch in ref):
        raise ParseError(f"Reference contains whitespace: {ref!r}", ref)

    repo_part, tag = parse_repository_tag(ref)
    if "@" in ref:
        if not tag:
            raise ParseError(f"Empty digest in reference: {ref}", ref)
        # name:tag@digest → drop the tag as well
        repo_part, _ = parse_repository_tag(repo_part)
        tag = DEFAULT_TAG
    elif tag is not None and not tag:
        raise ParseError(f"Empty tag in reference: {ref}", ref)

    if not repo_part:
        raise ParseError(f"Empty repository in reference: {ref}", ref)

    registry, repository = split_repo_name(repo_part)
    first, sep, rest = repo_part.partition("/")
    if registry == DEFAULT_REGISTRY and sep and first.lower() != first:
        # Upper-case first segment is a hostname in the reference grammar
        registry, repository = first, rest
    if not registry or not repository or any(not part for part in repository.split("/")):
        raise ParseError(f"Empty path component in reference: {ref}", ref)

    return _finalize(registry, repository.lower(), tag or DEFAULT_TAG)


def parse_reference(ref: str) -> ImageReference:
    """
    Parse an image reference into registry, repository and tag.

    Tries the strict grammar first, then the lenient fallback.

    Args:
        ref: Image reference (e.g., "nginx:1.25", "ghcr.io/user/app:v1.0")

    Returns:
        ImageReference with normalized registry host and repository

    Raises:
        ParseError: if neither parser accepts the reference
    """
    if ref is None or not ref.strip():
        raise ParseError("Empty image reference", ref)

    ref = ref.strip()
    try:
        return parse_with_grammar(ref)
    except ParseError as e:
        logger.debug(f"Strict parse rejected '{ref}' ({e}), trying fallback parser")
    return parse_fallback(ref)


def canonicalize(ref: str) -> str:
    """Return the canonical registry/repository:tag form of a reference."""
    return str(parse_reference(ref))
