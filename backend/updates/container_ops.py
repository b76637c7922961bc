"""
Container recreation for image updates.

stop → remove → create (same config, new image) → start.

The original Config and HostConfig are passed straight through to the
low-level API so every Docker field survives (GPU DeviceRequests, ulimits,
etc). Network endpoints are rebuilt from NetworkSettings, keeping static
IPs, user aliases and links.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import docker
from packaging import version

from updates.errors import DaemonError, NotFoundError
from utils.async_docker import async_docker_call

logger = logging.getLogger(__name__)

# Docker adds the short container ID as an alias on every network
CONTAINER_ID_SHORT_LENGTH = 12

# networking_config at create time works from this API version on
NETWORKING_CONFIG_MIN_API = "1.44"

BUILTIN_NETWORKS = ('bridge', 'host', 'none')

StepCallback = Callable[[str, bool, Optional[str]], Awaitable[None]]


def container_name(container) -> str:
    """Container name without the leading slash (short ID if unnamed)."""
    name = getattr(container, 'name', None) or (container.attrs or {}).get('Name', '')
    name = (name or '').lstrip('/')
    return name or container.id[:CONTAINER_ID_SHORT_LENGTH]


def extract_networking_config(attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    EndpointsConfig for the container's user-defined networks.

    Returns None when the container only sits on built-in networks.
    """
    networks = (attrs.get('NetworkSettings') or {}).get('Networks') or {}
    endpoints = {}
    for network_name, network_data in networks.items():
        if network_name in BUILTIN_NETWORKS:
            continue
        network_data = network_data or {}
        endpoint = {}

        ipam_raw = network_data.get('IPAMConfig') or {}
        ipam = {k: ipam_raw[k] for k in ('IPv4Address', 'IPv6Address') if ipam_raw.get(k)}
        if ipam:
            endpoint['IPAMConfig'] = ipam

        aliases = [a for a in (network_data.get('Aliases') or []) if len(a) != CONTAINER_ID_SHORT_LENGTH]
        if aliases:
            endpoint['Aliases'] = aliases

        if network_data.get('Links'):
            endpoint['Links'] = network_data['Links']

        endpoints[network_name] = endpoint

    if not endpoints:
        return None
    return {'EndpointsConfig': endpoints}


def extract_container_config(attrs: Dict[str, Any]) -> Dict[str, Any]:
    """Everything needed to recreate the container from its inspect data."""
    host_config = dict(attrs.get('HostConfig') or {})
    networking_config = extract_networking_config(attrs)

    # NetworkMode names the primary user network; keep it consistent with the endpoints
    if networking_config and host_config.get('NetworkMode') in (None, '', 'default'):
        host_config['NetworkMode'] = next(iter(networking_config['EndpointsConfig']))

    return {
        'config': dict(attrs.get('Config') or {}),
        'host_config': host_config,
        'networking_config': networking_config,
        'name': (attrs.get('Name') or '').lstrip('/'),
    }


async def create_container(client: docker.DockerClient, image: str, extracted: Dict[str, Any]) -> str:
    """
    Create the replacement container.

    On engines older than API 1.44 the extra networks are connected after
    create; if that fails the new container is force-removed so the name is
    free for the next attempt.

    Returns:
        New container ID

    Raises:
        docker.errors.APIError from create, or DaemonError when a network
        could not be connected
    """
    config = extracted['config']
    host_config = extracted['host_config']
    networking_config = extracted.get('networking_config')
    network_mode = host_config.get('NetworkMode') or ''
    shares_namespace = network_mode.startswith('container:')

    api_version = version.parse(client.api.api_version)
    connect_at_create = api_version >= version.parse(NETWORKING_CONFIG_MIN_API)

    response = await async_docker_call(
        client.api.create_container,
        image=image,
        name=extracted.get('name') or None,
        hostname=config.get('Hostname') if not shares_namespace else None,
        user=config.get('User'),
        environment=config.get('Env'),
        command=config.get('Cmd'),
        entrypoint=config.get('Entrypoint'),
        working_dir=config.get('WorkingDir'),
        labels=config.get('Labels'),
        host_config=host_config,
        networking_config=networking_config if connect_at_create else None,
        healthcheck=config.get('Healthcheck'),
        stop_signal=config.get('StopSignal'),
        domainname=config.get('Domainname'),
        mac_address=config.get('MacAddress') if not shares_namespace else None,
        tty=config.get('Tty', False),
        stdin_open=config.get('OpenStdin', False),
    )
    container_id = response['Id']

    if networking_config and not connect_at_create:
        # Older engines: attach the remaining networks after creation
        primary = network_mode
        try:
            for network_name, endpoint in networking_config['EndpointsConfig'].items():
                if network_name == primary:
                    continue
                ipam = endpoint.get('IPAMConfig') or {}
                await async_docker_call(
                    client.api.connect_container_to_network,
                    container_id,
                    network_name,
                    aliases=endpoint.get('Aliases'),
                    links=endpoint.get('Links'),
                    ipv4_address=ipam.get('IPv4Address'),
                    ipv6_address=ipam.get('IPv6Address'),
                )
        except docker.errors.APIError as e:
            logger.error(f"Failed to connect new container {container_id[:CONTAINER_ID_SHORT_LENGTH]} to networks: {e}")
            try:
                await async_docker_call(client.api.remove_container, container_id, force=True)
            except docker.errors.APIError as cleanup_error:
                logger.warning(f"Could not remove half-configured container {container_id[:CONTAINER_ID_SHORT_LENGTH]}: {cleanup_error}")
            raise DaemonError(f"network connect failed: {e}", step='create')

    return container_id


async def recreate_container(
    client: docker.DockerClient,
    container,
    new_image: str,
    on_step: Optional[StepCallback] = None,
) -> str:
    """
    Replace container with one running new_image.

    on_step is awaited after every step with (step, success, error).
    Nothing is rolled back: a failure after remove leaves the container gone.

    Returns:
        New container ID

    Raises:
        NotFoundError: the container or image vanished mid-sequence
        DaemonError: with .step set to the step that failed
    """
    name = container_name(container)
    extracted = extract_container_config(container.attrs or {})

    async def step(label: str, func, *args, **kwargs):
        try:
            value = await async_docker_call(func, *args, **kwargs)
        except docker.errors.NotFound as e:
            if on_step:
                await on_step(label, False, str(e))
            raise NotFoundError(f"{label} failed for {name}: {e}")
        except docker.errors.APIError as e:
            if on_step:
                await on_step(label, False, str(e))
            raise DaemonError(f"{label} failed for {name}: {e}", step=label)
        if on_step:
            await on_step(label, True, None)
        return value

    await step('stop', container.stop)
    await step('remove', container.remove)

    try:
        new_id = await create_container(client, new_image, extracted)
    except docker.errors.NotFound as e:
        if on_step:
            await on_step('create', False, str(e))
        raise NotFoundError(f"create failed for {name}: {e}")
    except docker.errors.APIError as e:
        if on_step:
            await on_step('create', False, str(e))
        raise DaemonError(f"create failed for {name}: {e}", step='create')
    except DaemonError as e:
        if on_step:
            await on_step('create', False, e.message)
        raise DaemonError(f"create failed for {name}: {e.message}", step='create')
    if on_step:
        await on_step('create', True, None)

    await step('start', client.api.start, new_id)

    logger.info(f"Recreated container {name} with image {new_image} ({new_id[:CONTAINER_ID_SHORT_LENGTH]})")
    return new_id
