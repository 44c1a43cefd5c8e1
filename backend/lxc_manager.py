import os
import grp
import time
import shutil
import logging
import platform
import threading
import subprocess
from datetime import datetime

from errors import RuntimeBackendError, ContainerNotFoundError
from runtime_types import (
    RuntimeType, ContainerStatus, Container, ContainerConfig, NetworkInfo,
    ExecResult, RuntimeInfo, EventHub
)

logger = logging.getLogger(__name__)

LXC_ROOT = '/var/lib/lxc'
REQUIRED_TOOLS = ('lxc-create', 'lxc-start', 'lxc-stop', 'lxc-info')
LXC_GROUPS = ('lxd', 'lxc')

# image base name -> (dist, release) for the download template
IMAGE_TEMPLATES = {
    'ubuntu': ('ubuntu', 'focal'),
    'debian': ('debian', 'bullseye'),
    'alpine': ('alpine', '3.18'),
}
DEFAULT_TEMPLATE = IMAGE_TEMPLATES['ubuntu']

STATE_MAP = {
    'RUNNING': ContainerStatus.RUNNING,
    'STOPPED': ContainerStatus.STOPPED,
    'FROZEN': ContainerStatus.PAUSED,
}

ARCH_MAP = {'x86_64': 'amd64', 'aarch64': 'arm64', 'armv7l': 'armhf'}


def _run(argv, timeout=120):
    return subprocess.run(argv, capture_output=True, text=True, timeout=timeout)


def image_template(image):
    """Map an image reference like 'alpine:3.18' to an LXC (dist, release)"""
    base = (image or '').split(':')[0].split('/')[-1].lower()
    return IMAGE_TEMPLATES.get(base, DEFAULT_TEMPLATE)


def parse_state(text):
    """Map lxc-info/lxc-ls state strings to ContainerStatus"""
    for token in (text or '').replace(':', ' ').split():
        status = STATE_MAP.get(token.upper())
        if status:
            return status
    return ContainerStatus.STOPPED


class ConsoleLog:
    """Chunks of a container's console.log; in follow mode polls until close()"""

    def __init__(self, path, follow=False, poll_interval=1, chunk_size=4096):
        self.path = path
        self.follow = follow
        self.poll_interval = poll_interval
        self.chunk_size = chunk_size
        self._closed = threading.Event()

    def __iter__(self):
        fh = open(self.path, 'rb')
        try:
            while not self._closed.is_set():
                chunk = fh.read(self.chunk_size)
                if chunk:
                    yield chunk
                elif self.follow:
                    self._closed.wait(self.poll_interval)
                else:
                    return
        finally:
            fh.close()

    def close(self):
        self._closed.set()

    @property
    def closed(self):
        return self._closed.is_set()


class LXCRuntime:
    """LXC adapter driven through the lxc-* host tools

    The tools have no list-with-live-state primitive we can subscribe to, so a
    local registry is reconciled against `lxc-ls` whenever containers are read.
    """

    runtime_type = RuntimeType.LXC

    def __init__(self, runner=None, lxc_root=LXC_ROOT, start_timeout=30, poll_interval=1,
                 sleep=time.sleep, clock=time.monotonic):
        self._run = runner or _run
        self.lxc_root = lxc_root
        self.start_timeout = start_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock
        self.events = EventHub(RuntimeType.LXC)
        self._containers = {}
        self._lock = threading.Lock()

    @staticmethod
    def probe(which=shutil.which):
        """Tools on PATH and the caller may drive them"""
        missing = [tool for tool in REQUIRED_TOOLS if not which(tool)]
        if missing:
            logger.debug(f"LXC tools missing: {', '.join(missing)}")
            return False
        if os.geteuid() == 0:
            return True
        try:
            groups = {grp.getgrgid(gid).gr_name for gid in os.getgroups()}
        except KeyError:
            return False
        return any(name in groups for name in LXC_GROUPS)

    def _exec(self, argv, action, container_id=''):
        try:
            result = self._run(argv)
        except FileNotFoundError as e:
            raise RuntimeBackendError(RuntimeType.LXC, f"{argv[0]} not found: {str(e)}")
        except subprocess.TimeoutExpired:
            raise RuntimeBackendError(RuntimeType.LXC, f"{' '.join(argv)} timed out")

        if result.returncode != 0:
            detail = (result.stderr or result.stdout or '').strip() or f"exit code {result.returncode}"
            self.events.emit(f"{action}_error", f"LXC {action} failed", container_id, error=detail)
            logger.error(f"❌ LXC {action} failed for {container_id or '-'}: {detail}")
            raise RuntimeBackendError(RuntimeType.LXC, detail)
        return result.stdout or ''

    def get_runtime_info(self):
        version = 'unknown'
        try:
            version = self._exec(['lxc-create', '--version'], 'version').strip() or 'unknown'
        except RuntimeBackendError as e:
            logger.warning(f"⚠️ Could not read LXC version: {str(e)}")
        return RuntimeInfo(
            type=RuntimeType.LXC,
            version=version,
            os=platform.system().lower(),
            architecture=platform.machine(),
            available=True,
            capabilities=['run', 'logs', 'exec', 'networking', 'system_containers'],
            metadata={'lxc_root': self.lxc_root}
        )

    ###############################################
    # Containers
    ###############################################

    def create_container(self, request):
        name = request.name
        dist, release = image_template(request.image)
        arch = ARCH_MAP.get(platform.machine(), 'amd64')

        self.events.emit('container_create', 'Creating LXC container', name, dist=dist, release=release)
        self._exec(['lxc-create', '-n', name, '-t', 'download', '--',
                    '--dist', dist, '--release', release, '--arch', arch],
                   'container_create', name)

        if request.environment:
            self._write_environment(name, request.environment)
        if request.ports:
            logger.warning(f"⚠️ LXC does not publish ports; {name} is reachable on its own IP")

        container = Container(
            id=name,
            name=name,
            image=request.image,
            status=ContainerStatus.CREATED,
            runtime=RuntimeType.LXC,
            config=ContainerConfig(
                command=list(request.command),
                working_dir=request.working_dir,
                environment=dict(request.environment),
                labels=dict(request.labels),
                restart_policy=request.restart_policy
            ),
            network=NetworkInfo(ports=list(request.ports), network_mode=request.network_mode),
            resources=request.resources
        )
        with self._lock:
            self._containers[name] = container

        logger.info(f"📦 LXC container created: {name} ({dist}/{release})")
        self.events.emit('container_create_success', 'LXC container created', name)
        return container

    def _write_environment(self, name, environment):
        config_path = os.path.join(self.lxc_root, name, 'config')
        try:
            with open(config_path, 'a') as fh:
                for key, value in environment.items():
                    fh.write(f"lxc.environment = {key}={value}\n")
        except OSError as e:
            raise RuntimeBackendError(RuntimeType.LXC, f"cannot write {config_path}: {str(e)}")

    def start_container(self, container_id):
        self.events.emit('container_start', 'Starting LXC container', container_id)
        self._exec(['lxc-start', '-n', container_id, '-d'], 'container_start', container_id)
        self._wait_running(container_id)
        self._set_status(container_id, ContainerStatus.RUNNING, started_at=datetime.now())
        logger.info(f"🚀 LXC container running: {container_id}")
        self.events.emit('container_start_success', 'LXC container running', container_id)

    def _wait_running(self, container_id):
        deadline = self._clock() + self.start_timeout
        while True:
            if self._state(container_id) == ContainerStatus.RUNNING:
                return
            if self._clock() >= deadline:
                break
            self._sleep(self.poll_interval)
        self.events.emit('container_start_error', 'LXC container did not start in time', container_id)
        raise RuntimeBackendError(
            RuntimeType.LXC,
            f"timeout waiting for container {container_id} to reach RUNNING after {self.start_timeout}s"
        )

    def _state(self, container_id):
        return parse_state(self._exec(['lxc-info', '-n', container_id, '-s'], 'container_inspect', container_id))

    def stop_container(self, container_id):
        self.events.emit('container_stop', 'Stopping LXC container', container_id)
        self._exec(['lxc-stop', '-n', container_id], 'container_stop', container_id)
        self._set_status(container_id, ContainerStatus.STOPPED, stopped_at=datetime.now())
        self.events.emit('container_stop_success', 'LXC container stopped', container_id)

    def restart_container(self, container_id):
        self.stop_container(container_id)
        self.start_container(container_id)

    def remove_container(self, container_id):
        self.events.emit('container_remove', 'Destroying LXC container', container_id)
        self._exec(['lxc-destroy', '-n', container_id, '-f'], 'container_remove', container_id)
        with self._lock:
            self._containers.pop(container_id, None)
        logger.info(f"✅ LXC container {container_id} destroyed")
        self.events.emit('container_remove_success', 'LXC container destroyed', container_id)

    def get_container(self, container_id):
        self.refresh()
        with self._lock:
            container = self._containers.get(container_id)
        if container is None:
            raise ContainerNotFoundError(RuntimeType.LXC, f"container {container_id} not found")
        return container

    def list_containers(self):
        self.refresh()
        with self._lock:
            return list(self._containers.values())

    def refresh(self):
        """Reconcile the registry with what lxc-ls reports"""
        output = self._exec(['lxc-ls', '-f', '-F', 'NAME,STATE,IPV4'], 'container_list')
        seen = set()
        with self._lock:
            for line in output.splitlines()[1:]:
                fields = line.split()
                if len(fields) < 2:
                    continue
                name, state = fields[0], fields[1]
                ip = fields[2].rstrip(',') if len(fields) > 2 and fields[2] != '-' else ''
                seen.add(name)
                container = self._containers.get(name)
                if container is None:
                    container = Container(id=name, name=name, image='', status=ContainerStatus.STOPPED,
                                          runtime=RuntimeType.LXC)
                    self._containers[name] = container
                container.status = parse_state(state)
                container.network.ip_address = ip
            for name in list(self._containers):
                if name not in seen:
                    del self._containers[name]

    def _set_status(self, container_id, status, **stamps):
        with self._lock:
            container = self._containers.get(container_id)
            if container is None:
                return
            container.status = status
            for key, value in stamps.items():
                setattr(container, key, value)

    def get_container_logs(self, container_id, follow=False):
        path = os.path.join(self.lxc_root, container_id, 'console.log')
        if not os.path.exists(path):
            raise RuntimeBackendError(RuntimeType.LXC, f"no console log for container {container_id}")
        return ConsoleLog(path, follow, self.poll_interval)

    def execute_command(self, container_id, argv):
        self.events.emit('container_exec', 'Executing command', container_id, command=list(argv))
        try:
            result = self._run(['lxc-attach', '-n', container_id, '--'] + list(argv))
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            raise RuntimeBackendError(RuntimeType.LXC, f"lxc-attach failed: {str(e)}")
        return ExecResult(output=result.stdout or '', error=result.stderr or '', exit_code=result.returncode)

    def get_container_ip(self, container_id):
        output = self._exec(['lxc-info', '-n', container_id, '-iH'], 'container_inspect', container_id)
        lines = [line.strip() for line in output.splitlines() if line.strip()]
        if not lines:
            raise RuntimeBackendError(RuntimeType.LXC, f"No IP address for container {container_id}")
        return lines[0]

    def subscribe(self, callback):
        return self.events.subscribe(callback)

    def close(self):
        self.events.clear()
