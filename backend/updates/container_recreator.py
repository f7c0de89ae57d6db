"""
Docker SDK container recreation.

Implements the ContainerRecreator capabilities the health monitor delegates
to, and the create-without-start primitive the executor uses for updates.

Configuration is carried over by passthrough: the inspected Config and
HostConfig are handed back to the low-level create_container API, so fields
the SDK has no keyword for (DeviceRequests, CgroupnsMode, ...) survive a
recreate. Only three things are rewritten:
- labels: defaults baked into the old image are dropped so the new image's
  labels take effect
- networks: user-configured endpoints (static IPs, aliases, links) are
  preserved, auto-generated short-id aliases are not
- NetworkMode container:<id> is resolved to container:<name>
"""

import logging
from typing import Any, Dict, Optional

import docker
from packaging import version

from updates.types import ContainerRef, LogLike
from utils.async_docker import async_docker_call
from utils.container_health import is_running
from utils.docker_errors import is_container_already_stopped_error

logger = logging.getLogger(__name__)

# Internal key for endpoint settings that need explicit connection
_MANUAL_NETWORKING_CONFIG_KEY = '_dockguard_manual_networking_config'

# Docker adds the short container id as an alias on every user network
CONTAINER_ID_SHORT_LENGTH = 12

# networking_config at creation is honoured from this API version on
NETWORKING_CONFIG_MIN_API = "1.44"

STOP_TIMEOUT_SECONDS = 30


class DockerContainerRecreator:
    """Rebuilds containers from their inspected spec with the Docker SDK"""

    async def get_current_container(self, docker_client: docker.DockerClient, ref: ContainerRef) -> Optional[Any]:
        """
        Look the container up by id, then by name.

        The id changes whenever something else recreated the container, the
        name does not. Returns None when neither resolves.
        """
        for key in (ref.id, ref.name):
            if not key:
                continue
            try:
                return await async_docker_call(docker_client.containers.get, key)
            except docker.errors.NotFound:
                logger.debug(f"Container {key} not found")
        return None

    async def inspect_container(self, container: Any, log: LogLike) -> Dict[str, Any]:
        await async_docker_call(container.reload)
        log.debug(f"Inspected container {container.name} (status: {container.status})")
        return container.attrs

    async def stop_and_remove_container(
        self,
        container: Any,
        spec: Dict[str, Any],
        ref: ContainerRef,
        log: LogLike,
    ) -> None:
        if is_running(spec):
            log.info(f"Stopping container {ref.name}")
            try:
                await async_docker_call(container.stop, timeout=STOP_TIMEOUT_SECONDS)
            except Exception as e:
                if not is_container_already_stopped_error(e):
                    raise
        log.info(f"Removing container {ref.name}")
        await async_docker_call(container.remove, force=True)

    async def recreate_container(
        self,
        docker_client: docker.DockerClient,
        spec: Dict[str, Any],
        new_image: str,
        ref: ContainerRef,
        log: LogLike,
    ) -> Any:
        """
        Create a container named ref.name from spec with new_image.

        The new container is started only if the inspected one was running.
        """
        await self.ensure_image(docker_client, new_image, log)
        container = await self.create_from_spec(docker_client, spec, new_image, ref.name, log)

        if is_running(spec):
            log.info(f"Starting recreated container {ref.name}")
            await async_docker_call(container.start)
        else:
            log.info(f"Recreated container {ref.name} left stopped (was not running)")
        return container

    async def ensure_image(self, client: docker.DockerClient, image: str, log: LogLike) -> None:
        """Pull the image unless it is already present locally."""
        try:
            await async_docker_call(client.images.get, image)
            return
        except docker.errors.ImageNotFound:
            log.info(f"Image {image} not present locally, pulling")
        await async_docker_call(client.images.pull, image)

    async def create_from_spec(
        self,
        client: docker.DockerClient,
        spec: Dict[str, Any],
        image: str,
        name: str,
        log: LogLike,
    ) -> Any:
        """Create (but do not start) a container from an inspected spec."""
        old_image_labels = await self._get_image_labels(client, spec.get('Image'))
        extracted = await self.extract_container_config(client, spec, old_image_labels)
        log.info(f"Creating container {name} with image {image}")
        return await self._create_container(client, image, name, extracted)

    async def _get_image_labels(self, client: docker.DockerClient, image_ref: Optional[str]) -> Dict[str, str]:
        if not image_ref:
            return {}
        try:
            image = await async_docker_call(client.images.get, image_ref)
            return image.attrs.get("Config", {}).get("Labels", {}) or {}
        except Exception as e:
            logger.warning(f"Failed to get image labels for {image_ref}: {e}")
            return {}

    def extract_user_labels(
        self,
        container_labels: Optional[Dict[str, str]],
        image_labels: Optional[Dict[str, str]],
    ) -> Dict[str, str]:
        """Container labels minus those inherited unchanged from the image."""
        user_labels = dict(container_labels or {})
        for key, image_value in (image_labels or {}).items():
            if user_labels.get(key) == image_value:
                user_labels.pop(key, None)
        return user_labels

    def extract_network_config(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        """
        Work out how the new container should join networks.

        Returns a dict with "network" (primary user network or None),
        "network_mode" (override or None) and, when endpoints carry settings
        worth keeping, the manual networking config under the internal key.
        """
        networks = (attrs.get("NetworkSettings") or {}).get("Networks") or {}
        network_mode = (attrs.get("HostConfig") or {}).get("NetworkMode")

        result: Dict[str, Any] = {"network": None, "network_mode": None}

        custom_networks = {k: v for k, v in networks.items() if k not in ('bridge', 'host', 'none')}
        if custom_networks:
            result["network"] = next(iter(custom_networks))

            endpoints_config = {}
            for network_name, network_data in custom_networks.items():
                endpoint_config = self._extract_endpoint_config(network_data or {})
                if endpoint_config or len(custom_networks) > 1:
                    endpoints_config[network_name] = endpoint_config

            if endpoints_config:
                result[_MANUAL_NETWORKING_CONFIG_KEY] = {"EndpointsConfig": endpoints_config}

        if network_mode and network_mode != "default":
            if _MANUAL_NETWORKING_CONFIG_KEY not in result and not result["network"]:
                result["network_mode"] = network_mode

        return result

    def _extract_endpoint_config(self, network_data: Dict[str, Any]) -> Dict[str, Any]:
        endpoint_config: Dict[str, Any] = {}

        # Only user-configured addresses; auto-assigned ones live outside IPAMConfig
        ipam_raw = network_data.get("IPAMConfig") or {}
        ipam_config = {k: ipam_raw[k] for k in ("IPv4Address", "IPv6Address") if ipam_raw.get(k)}
        if ipam_config:
            endpoint_config["IPAMConfig"] = ipam_config

        aliases = [a for a in (network_data.get("Aliases") or []) if len(a) != CONTAINER_ID_SHORT_LENGTH]
        if aliases:
            endpoint_config["Aliases"] = aliases

        if network_data.get("Links"):
            endpoint_config["Links"] = network_data["Links"]

        return endpoint_config

    async def extract_container_config(
        self,
        client: docker.DockerClient,
        attrs: Dict[str, Any],
        old_image_labels: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        config = dict(attrs.get('Config') or {})
        host_config = dict(attrs.get('HostConfig') or {})

        if host_config.get('NetworkMode', '').startswith('container:'):
            ref_id = host_config['NetworkMode'].split(':', 1)[1]
            try:
                ref_container = await async_docker_call(client.containers.get, ref_id)
                host_config['NetworkMode'] = f"container:{ref_container.name}"
            except Exception as e:
                logger.warning(f"Failed to resolve NetworkMode {host_config['NetworkMode']}: {e}")

        network_config = self.extract_network_config(attrs)

        return {
            'config': config,
            'host_config': host_config,
            'labels': self.extract_user_labels(config.get('Labels'), old_image_labels),
            'network_mode_override': network_config.get('network_mode'),
            _MANUAL_NETWORKING_CONFIG_KEY: network_config.get(_MANUAL_NETWORKING_CONFIG_KEY),
        }

    async def _create_container(
        self,
        client: docker.DockerClient,
        image: str,
        name: str,
        extracted: Dict[str, Any],
    ) -> Any:
        config = extracted['config']
        host_config = extracted['host_config']

        if extracted.get('network_mode_override'):
            host_config['NetworkMode'] = extracted['network_mode_override']
        network_mode = host_config.get('NetworkMode') or ''
        shares_namespace = network_mode.startswith('container:')

        manual_networking_config = extracted.get(_MANUAL_NETWORKING_CONFIG_KEY)
        use_networking_config = (
            version.parse(client.api.api_version) >= version.parse(NETWORKING_CONFIG_MIN_API)
        )

        networking_config = None
        if manual_networking_config and use_networking_config:
            networking_config = manual_networking_config
            logger.debug("Using networking_config at creation")
        elif manual_networking_config:
            logger.debug("Will connect networks after creation (API < 1.44)")

        response = await async_docker_call(
            client.api.create_container,
            image=image,
            name=name,
            hostname=None if shares_namespace else config.get('Hostname'),
            user=config.get('User'),
            environment=config.get('Env'),
            command=config.get('Cmd'),
            entrypoint=config.get('Entrypoint'),
            working_dir=config.get('WorkingDir'),
            labels=extracted['labels'],
            host_config=host_config,
            networking_config=networking_config,
            healthcheck=config.get('Healthcheck'),
            stop_signal=config.get('StopSignal'),
            domainname=config.get('Domainname'),
            mac_address=None if shares_namespace else config.get('MacAddress'),
            tty=config.get('Tty', False),
            stdin_open=config.get('OpenStdin', False),
        )
        container = await async_docker_call(client.containers.get, response['Id'])

        if manual_networking_config and not use_networking_config:
            try:
                await self._connect_networks(client, container, manual_networking_config, network_mode)
            except Exception:
                try:
                    await async_docker_call(container.remove, force=True)
                except Exception as cleanup_error:
                    logger.warning(f"Failed to remove half-created container {name}: {cleanup_error}")
                raise

        return container

    async def _connect_networks(
        self,
        client: docker.DockerClient,
        container: Any,
        networking_config: Dict[str, Any],
        primary_network: str = "",
    ) -> None:
        """Connect a created container to each endpoint with its static IPs and aliases."""
        for network_name, endpoint_config in (networking_config.get('EndpointsConfig') or {}).items():
            connect_kwargs = {}
            ipam = endpoint_config.get('IPAMConfig') or {}
            if 'IPv4Address' in ipam:
                connect_kwargs['ipv4_address'] = ipam['IPv4Address']
            if 'IPv6Address' in ipam:
                connect_kwargs['ipv6_address'] = ipam['IPv6Address']
            if 'Aliases' in endpoint_config:
                connect_kwargs['aliases'] = endpoint_config['Aliases']
            if 'Links' in endpoint_config:
                connect_kwargs['links'] = endpoint_config['Links']

            try:
                network = await async_docker_call(client.networks.get, network_name)
                if network_name == primary_network:
                    # Attached at creation without endpoint settings
                    await async_docker_call(network.disconnect, container)
                await async_docker_call(network.connect, container, **connect_kwargs)
                logger.debug(f"Connected {container.name} to network {network_name}")
            except Exception as e:
                logger.error(f"Failed to connect to network {network_name}: {e}")
                raise
