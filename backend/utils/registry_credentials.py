"""
Registry Credentials Utility

Centralized credential lookup for Docker registries.
Used by both the registry client (token acquisition) and the applier
(authenticated pulls).
"""

import base64
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from updates.reference import DEFAULT_REGISTRY, normalize_registry_host, parse_reference
from utils.encryption import decrypt_token

logger = logging.getLogger(__name__)

# Docker daemon expects this server address for Docker Hub auth configs
DOCKER_HUB_SERVER_ADDRESS = "https://index.docker.io/v1/"


@dataclass
class Credential:
    """
    A registry credential as seen by the update engine.

    token holds the *encrypted* value for stored credentials and the
    plaintext value for externally supplied ones (encrypted=False).
    """
    url: str
    username: str
    token: str
    enabled: bool = True
    encrypted: bool = True

    @property
    def host(self) -> str:
        return normalize_registry_host(self.url)

    def matches(self, registry_host: str) -> bool:
        return self.host == normalize_registry_host(registry_host)

    def plaintext_token(self) -> str:
        """
        Return the usable token, decrypting just before use.

        Raises:
            ValueError / IOError: from decrypt_token
        """
        if not self.encrypted:
            return self.token
        return decrypt_token(self.token)

    @property
    def usable(self) -> bool:
        return bool(self.enabled and self.username and self.token)


def load_stored_credentials(db) -> List[Credential]:
    """
    Load enabled stored credentials from the database.

    Args:
        db: DatabaseManager instance

    Returns:
        List of Credential (empty on database error)
    """
    try:
        rows = db.get_registry_credentials(enabled_only=True)
    except Exception as e:
        logger.error(f"Error loading registry credentials: {e}")
        return []
    return [
        Credential(url=row.url, username=row.username, token=row.token_encrypted,
                   enabled=row.enabled, encrypted=True)
        for row in rows
    ]


def credentials_for_host(credentials: Iterable[Credential], registry_host: str) -> List[Credential]:
    """All usable credentials whose URL normalizes to registry_host, in order."""
    matches = [c for c in credentials if c.usable and c.matches(registry_host)]
    logger.debug(f"Matched {len(matches)} credential(s) for registry '{normalize_registry_host(registry_host)}'")
    return matches


def build_auth_config(credentials: Iterable[Credential], image_ref: str) -> Optional[Dict[str, str]]:
    """
    Build a docker SDK auth_config for pulling image_ref.

    Returns:
        Dict with username, password, serveraddress or None when no credential
        matches (or none can be decrypted)

    Examples:
        nginx:1.25 → docker.io → serveraddress "https://index.docker.io/v1/"
        ghcr.io/user/app:latest → ghcr.io → serveraddress "ghcr.io"
    """
    try:
        registry = parse_reference(image_ref).registry
    except Exception as e:
        logger.warning(f"Cannot derive registry for {image_ref}: {e}")
        return None

    for cred in credentials_for_host(credentials, registry):
        try:
            password = cred.plaintext_token()
        except (ValueError, IOError) as e:
            logger.error(f"Failed to decrypt credentials for {cred.url}: {e}")
            continue
        server = DOCKER_HUB_SERVER_ADDRESS if registry == DEFAULT_REGISTRY else cred.host
        return {"username": cred.username, "password": password, "serveraddress": server}
    return None


def encode_basic_auth(username: str, password: str) -> str:
    """Encode username:password as a Basic authentication header value."""
    encoded = base64.b64encode(f"{username}:{password}".encode()).decode()
    return f"Basic {encoded}"

