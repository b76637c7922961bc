"""
Filesystem storage for stacks.

Simple file I/O - no database interaction. Each stack lives in its own
directory under STACKS_DIR and holds a compose file (compose.yaml preferred).

All public functions are async to avoid blocking the event loop on slow storage (NFS, etc.).
Uses asyncio.to_thread() for synchronous filesystem operations.
"""
import asyncio
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
import yaml

from config.paths import STACKS_DIR as _STACKS_DIR

logger = logging.getLogger(__name__)

STACKS_DIR = Path(_STACKS_DIR)

# Looked up in this order, like `docker compose` itself
COMPOSE_FILE_NAMES = ("compose.yaml", "compose.yml", "docker-compose.yaml", "docker-compose.yml")

# Valid stack name pattern: lowercase alphanumeric, hyphens, underscores
# Must start with alphanumeric
VALID_NAME_PATTERN = re.compile(r'^[a-z0-9][a-z0-9_-]*$')


def validate_stack_name(name: str) -> None:
    """
    Validate stack name is filesystem-safe.

    Raises:
        ValueError: If name is invalid
    """
    if not name or len(name) > 100:
        raise ValueError("Stack name must be 1-100 characters")
    if not VALID_NAME_PATTERN.match(name):
        raise ValueError(
            "Stack name must be lowercase alphanumeric, hyphens, underscores, "
            "and start with a letter or number"
        )


def validate_path_safety(path: Path, root: Optional[Path] = None) -> None:
    """
    Ensure path is within the stacks directory and not a symlink escape.

    Raises:
        ValueError: If path escapes stacks directory or is a symlink
    """
    root = root or STACKS_DIR
    if path.is_symlink():
        raise ValueError("Symlinks not allowed in stacks directory")

    resolved = path.resolve()
    root_resolved = root.resolve()
    if not str(resolved).startswith(str(root_resolved) + os.sep) and resolved != root_resolved:
        raise ValueError("Path escapes stacks directory")


def get_stack_path(name: str, root: Optional[Path] = None) -> Path:
    """
    Get directory path for a stack.

    Raises:
        ValueError: If name is invalid or path would escape the stacks directory
    """
    root = root or STACKS_DIR
    validate_stack_name(name)
    path = root / name
    validate_path_safety(path, root)
    return path


def find_compose_file(stack_path: Path) -> Optional[Path]:
    for file_name in COMPOSE_FILE_NAMES:
        candidate = stack_path / file_name
        if candidate.is_file():
            return candidate
    return None


async def list_stacks(root: Optional[Path] = None) -> List[str]:
    """
    List all stack names on filesystem.

    Returns:
        Sorted list of stack names (directories containing a compose file)
    """
    root = root or STACKS_DIR

    def _list():
        if not root.exists():
            return []
        return sorted([
            d.name for d in root.iterdir()
            if d.is_dir() and VALID_NAME_PATTERN.match(d.name) and find_compose_file(d) is not None
        ])

    return await asyncio.to_thread(_list)


async def read_compose(name: str, root: Optional[Path] = None) -> str:
    """
    Read a stack's compose file.

    Raises:
        FileNotFoundError: If the stack has no compose file
    """
    stack_path = get_stack_path(name, root)
    compose_path = await asyncio.to_thread(find_compose_file, stack_path)
    if compose_path is None:
        raise FileNotFoundError(f"Stack '{name}' not found (missing compose.yaml)")

    async with aiofiles.open(compose_path, 'r') as f:
        return await f.read()


def parse_compose_services(compose_yaml: str) -> Dict[str, Dict[str, Any]]:
    """
    Parse the services section of a compose document.

    Returns:
        Dict of service name → service definition (empty on invalid YAML)
    """
    try:
        data = yaml.safe_load(compose_yaml) or {}
    except yaml.YAMLError as e:
        logger.warning(f"Invalid compose YAML: {e}")
        return {}
    if not isinstance(data, dict):
        return {}
    services = data.get('services') or {}
    if not isinstance(services, dict):
        return {}
    return {name: (svc if isinstance(svc, dict) else {}) for name, svc in services.items()}
