import docker
import logging
import platform
from contextlib import contextmanager
from datetime import datetime

from errors import RuntimeBackendError, ContainerNotFoundError
from runtime_types import (
    RuntimeType, ContainerStatus, Container, ContainerConfig, NetworkInfo,
    PortMapping, ResourceConfig, ExecResult, RuntimeInfo, EventHub
)

logger = logging.getLogger(__name__)

DOCKER_SOCKET = 'unix:///var/run/docker.sock'

# Daemon state -> ContainerStatus
STATUS_MAP = {
    'created': ContainerStatus.CREATED,
    'running': ContainerStatus.RUNNING,
    'restarting': ContainerStatus.RUNNING,
    'paused': ContainerStatus.PAUSED,
    'exited': ContainerStatus.EXITED,
    'removing': ContainerStatus.STOPPED,
    'dead': ContainerStatus.ERROR,
}


def _connect():
    try:
        client = docker.DockerClient(base_url=DOCKER_SOCKET)
        client.ping()
        logger.info("✅ Connected to Docker daemon via socket")
        return client
    except Exception as e:
        logger.warning(f"⚠️ Socket connection failed, trying environment: {str(e)}")
    try:
        client = docker.from_env()
        client.ping()
        logger.info("✅ Connected to Docker daemon via environment")
        return client
    except Exception as e:
        logger.error(f"❌ Failed to connect to Docker daemon: {str(e)}")
        raise RuntimeBackendError(RuntimeType.DOCKER, str(e),
                                  f"Cannot connect to Docker daemon. Is Docker running? Error: {str(e)}")


class DockerRuntime:
    """Docker adapter: container state mirrors what the daemon reports"""

    runtime_type = RuntimeType.DOCKER

    def __init__(self, client=None):
        self.events = EventHub(RuntimeType.DOCKER)
        self.client = client if client is not None else _connect()

    @staticmethod
    def probe():
        """Daemon reachable?"""
        try:
            client = docker.from_env()
            try:
                client.ping()
            finally:
                client.close()
            return True
        except Exception as e:
            logger.debug(f"Docker not available: {str(e)}")
            return False

    @contextmanager
    def _api(self, action, container_id=''):
        try:
            yield
        except docker.errors.NotFound as e:
            self.events.emit(f"{action}_error", f"Container {container_id} not found", container_id, error=str(e))
            raise ContainerNotFoundError(RuntimeType.DOCKER, str(e), f"Container {container_id} not found")
        except docker.errors.DockerException as e:
            self.events.emit(f"{action}_error", f"Docker {action} failed", container_id, error=str(e))
            logger.error(f"❌ Docker {action} failed for {container_id or '-'}: {str(e)}")
            raise RuntimeBackendError(RuntimeType.DOCKER, str(e))

    def get_runtime_info(self):
        version = 'unknown'
        try:
            version = self.client.version().get('Version', 'unknown')
        except Exception as e:
            logger.warning(f"⚠️ Could not read Docker version: {str(e)}")
        return RuntimeInfo(
            type=RuntimeType.DOCKER,
            version=version,
            os=platform.system().lower(),
            architecture=platform.machine(),
            available=True,
            capabilities=['build', 'run', 'logs', 'networking', 'volumes', 'exec', 'events'],
            metadata={'client_type': 'docker_api', 'backend': 'docker_daemon'}
        )

    ###############################################
    # Containers
    ###############################################

    def create_container(self, request):
        self.events.emit('container_create', 'Creating container', request.name, image=request.image)
        kwargs = {
            'image': request.image,
            'name': request.name,
            'environment': request.environment,
            'labels': request.labels,
            'ports': {f"{p.container_port}/{p.protocol}": p.host_port for p in request.ports},
            'detach': True,
        }
        if request.command:
            kwargs['command'] = request.command
        if request.working_dir:
            kwargs['working_dir'] = request.working_dir
        if request.restart_policy:
            kwargs['restart_policy'] = {'Name': request.restart_policy}
        if request.network_mode:
            kwargs['network_mode'] = request.network_mode
        if request.resources:
            if request.resources.memory:
                kwargs['mem_limit'] = request.resources.memory
            if request.resources.cpu_shares:
                kwargs['cpu_shares'] = request.resources.cpu_shares
            if request.resources.cpu_limit:
                kwargs['nano_cpus'] = request.resources.cpu_limit

        with self._api('container_create', request.name):
            cont = self.client.containers.create(**kwargs)

        logger.info(f"📦 Container created: {request.name} ({cont.id[:12]})")
        self.events.emit('container_create_success', 'Container created', cont.id, name=request.name)
        container = self._to_container(cont)
        container.resources = request.resources
        return container

    def start_container(self, container_id):
        self.events.emit('container_start', 'Starting container', container_id)
        with self._api('container_start', container_id):
            self.client.containers.get(container_id).start()
        logger.info(f"🚀 Container started: {container_id[:12]}")
        self.events.emit('container_start_success', 'Container running', container_id)

    def stop_container(self, container_id):
        self.events.emit('container_stop', 'Stopping container', container_id)
        with self._api('container_stop', container_id):
            self.client.containers.get(container_id).stop(timeout=10)
        logger.info(f"🛑 Container stopped: {container_id[:12]}")
        self.events.emit('container_stop_success', 'Container stopped', container_id)

    def restart_container(self, container_id):
        self.events.emit('container_restart', 'Restarting container', container_id)
        with self._api('container_restart', container_id):
            self.client.containers.get(container_id).restart(timeout=10)
        self.events.emit('container_restart_success', 'Container restarted', container_id)

    def remove_container(self, container_id):
        self.events.emit('container_remove', 'Removing container', container_id)
        with self._api('container_remove', container_id):
            self.client.containers.get(container_id).remove(force=True)
        logger.info(f"✅ Container {container_id[:12]} removed")
        self.events.emit('container_remove_success', 'Container removed', container_id)

    def get_container(self, container_id):
        with self._api('container_inspect', container_id):
            cont = self.client.containers.get(container_id)
        return self._to_container(cont)

    def list_containers(self):
        with self._api('container_list'):
            containers = self.client.containers.list(all=True)
        return [self._to_container(c) for c in containers]

    def get_container_logs(self, container_id, follow=False, tail=100):
        """Raw byte stream; the returned stream has close() when following"""
        with self._api('container_logs', container_id):
            cont = self.client.containers.get(container_id)
            return cont.logs(stream=True, follow=follow, tail=tail)

    def execute_command(self, container_id, argv):
        self.events.emit('container_exec', 'Executing command', container_id, command=list(argv))
        with self._api('container_exec', container_id):
            cont = self.client.containers.get(container_id)
            exit_code, output = cont.exec_run(argv, demux=True)
        stdout, stderr = output if isinstance(output, tuple) else (output, None)
        return ExecResult(
            output=(stdout or b'').decode('utf-8', errors='ignore'),
            error=(stderr or b'').decode('utf-8', errors='ignore'),
            exit_code=exit_code if exit_code is not None else 0
        )

    def get_container_ip(self, container_id):
        with self._api('container_inspect', container_id):
            cont = self.client.containers.get(container_id)
        settings = cont.attrs.get('NetworkSettings', {})
        ip = settings.get('IPAddress')
        if not ip:
            for net in (settings.get('Networks') or {}).values():
                if net.get('IPAddress'):
                    ip = net['IPAddress']
                    break
        if not ip:
            raise RuntimeBackendError(RuntimeType.DOCKER, f"No IP address for container {container_id}")
        return ip

    ###############################################
    # Images
    ###############################################

    def build_image(self, tag, context):
        """Submit a tar build context; yields decoded build-progress lines"""
        self.events.emit('build_start', 'Starting image build', tag=tag)
        with self._api('build'):
            stream = self.client.api.build(
                fileobj=context,
                custom_context=True,
                tag=tag,
                rm=True,
                forcerm=True,
                decode=True
            )
            for chunk in stream:
                yield chunk

    def find_image_by_tag(self, tag):
        wanted = {tag, tag if ':' in tag else f"{tag}:latest"}
        with self._api('image_list'):
            images = self.client.images.list()
        for img in images:
            if wanted.intersection(img.tags or []):
                return img.id
        return None

    def list_images(self):
        with self._api('image_list'):
            images = self.client.images.list()
        return [
            {'id': img.id, 'tags': list(img.tags or []), 'created': img.attrs.get('Created', '')}
            for img in images
        ]

    def remove_image(self, image_id):
        with self._api('image_remove'):
            self.client.images.remove(image_id, force=True)
        logger.info(f"🧹 Removed image {image_id[:19]}")

    def prune_dangling_images(self):
        with self._api('image_prune'):
            report = self.client.images.prune(filters={'dangling': True})
        deleted = report.get('ImagesDeleted') or []
        reclaimed = report.get('SpaceReclaimed', 0)
        if deleted:
            logger.info(f"🧹 Pruned {len(deleted)} dangling images, reclaimed {reclaimed} bytes")
        else:
            logger.info("🧹 No dangling images to prune")
        return {'deleted': len(deleted), 'space_reclaimed': reclaimed}

    ###############################################
    # Events / lifecycle
    ###############################################

    def subscribe(self, callback):
        return self.events.subscribe(callback)

    def close(self):
        self.events.clear()
        try:
            self.client.close()
        except Exception as e:
            logger.warning(f"⚠️ Error closing Docker client: {str(e)}")

    def _to_container(self, cont):
        attrs = cont.attrs or {}
        config = attrs.get('Config') or {}
        host_config = attrs.get('HostConfig') or {}
        net = attrs.get('NetworkSettings') or {}
        state = attrs.get('State') or {}

        env = {}
        for item in config.get('Env') or []:
            key, _, value = item.partition('=')
            env[key] = value

        ports = []
        for spec, bindings in (net.get('Ports') or {}).items():
            container_port, _, proto = spec.partition('/')
            for binding in bindings or []:
                ports.append(PortMapping(
                    host_port=int(binding.get('HostPort') or 0),
                    container_port=int(container_port),
                    protocol=proto or 'tcp'
                ))

        image = config.get('Image') or attrs.get('Image', '')
        return Container(
            id=cont.id,
            name=cont.name,
            image=image,
            status=STATUS_MAP.get(cont.status, ContainerStatus.ERROR),
            runtime=RuntimeType.DOCKER,
            config=ContainerConfig(
                command=config.get('Cmd') or [],
                working_dir=config.get('WorkingDir') or '',
                environment=env,
                labels=config.get('Labels') or {},
                restart_policy=(host_config.get('RestartPolicy') or {}).get('Name', '')
            ),
            network=NetworkInfo(
                ip_address=net.get('IPAddress') or '',
                ports=ports,
                network_mode=host_config.get('NetworkMode') or ''
            ),
            resources=ResourceConfig(
                memory=host_config.get('Memory') or 0,
                cpu_shares=host_config.get('CpuShares') or 0,
                cpu_limit=host_config.get('NanoCpus') or 0
            ),
            created_at=_parse_time(attrs.get('Created')) or datetime.now(),
            started_at=_parse_time(state.get('StartedAt')),
            stopped_at=_parse_time(state.get('FinishedAt'))
        )


def _parse_time(value):
    if not value or value.startswith('0001-'):
        return None
    try:
        # Daemon timestamps carry nanoseconds; trim to microseconds
        head, _, frac = value.rstrip('Z').partition('.')
        if frac:
            head = f"{head}.{frac[:6]}"
        return datetime.fromisoformat(head)
    except ValueError:
        return None
