"""
Runtime Factory
Senses the host, tracks which container backends are usable and picks one
preferred backend deterministically
"""
import os
import logging
import platform
import threading
from dataclasses import dataclass, asdict

from errors import BackendUnavailableError, ValidationError, LaunchpadError
from runtime_types import RuntimeType
from docker_manager import DockerRuntime
from containerd_manager import ContainerdRuntime
from lxc_manager import LXCRuntime

logger = logging.getLogger(__name__)

CONTAINERD_DISTROS = ('ubuntu', 'debian', 'rhel', 'centos', 'fedora')
ARM_ARCHES = ('arm', 'arm64')
VIRT_MARKERS = ('vmware', 'virtualbox', 'qemu', 'kvm', 'xen', 'hyper-v')

ARCH_ALIASES = {
    'x86_64': 'amd64',
    'amd64': 'amd64',
    'aarch64': 'arm64',
    'arm64': 'arm64',
    'armv7l': 'arm',
    'armv6l': 'arm',
    'arm': 'arm',
}

# Display / iteration order
RUNTIME_ORDER = (RuntimeType.DOCKER, RuntimeType.CONTAINERD, RuntimeType.LXC)


@dataclass(frozen=True)
class HostInfo:
    os: str
    architecture: str
    distribution: str = ''
    is_raspberry_pi: bool = False
    is_nested_container: bool = False
    virtualization: str = ''

    def to_dict(self):
        return asdict(self)


def _read(root, relpath):
    try:
        with open(os.path.join(root, relpath), 'r', errors='ignore') as fh:
            return fh.read()
    except OSError:
        return ''


def sense_host(root='/', system=None, machine=None):
    """Collect the facts the selection policy needs; root is configurable for tests"""
    system = (system or platform.system()).lower()
    raw_arch = (machine or platform.machine()).lower()
    arch = ARCH_ALIASES.get(raw_arch, raw_arch)

    distribution = ''
    if system == 'linux':
        for line in _read(root, 'etc/os-release').splitlines():
            if line.startswith('ID='):
                distribution = line[3:].strip().strip('"').lower()
                break

    cpuinfo = _read(root, 'proc/cpuinfo').lower()
    model = _read(root, 'proc/device-tree/model').lower()
    is_pi = 'raspberry' in cpuinfo or 'bcm283' in cpuinfo or 'raspberry' in model

    cgroup = _read(root, 'proc/1/cgroup')
    nested = os.path.exists(os.path.join(root, '.dockerenv')) or 'docker' in cgroup or 'lxc' in cgroup

    product = _read(root, 'sys/class/dmi/id/product_name').lower()
    virtualization = next((marker for marker in VIRT_MARKERS if marker in product), '')

    return HostInfo(
        os=system,
        architecture=arch,
        distribution=distribution,
        is_raspberry_pi=is_pi,
        is_nested_container=nested,
        virtualization=virtualization
    )


def resolve_preferred_runtime(host, available):
    """Ordered, short-circuiting preference policy

    The first rule that matches and has one of its choices available wins.
    Raspberry Pi hosts always stop at the first rule.
    """
    def pick(*choices):
        for choice in choices:
            if choice in available:
                return choice
        return None

    if host.is_raspberry_pi:
        return pick(RuntimeType.CONTAINERD, RuntimeType.DOCKER) or RuntimeType.CONTAINERD

    rules = (
        (host.is_nested_container, (RuntimeType.CONTAINERD,)),
        (host.os == 'darwin', (RuntimeType.DOCKER, RuntimeType.CONTAINERD)),
        (host.architecture in ARM_ARCHES, (RuntimeType.CONTAINERD,)),
        (host.distribution in CONTAINERD_DISTROS, (RuntimeType.CONTAINERD,)),
    )
    for matched, choices in rules:
        if matched:
            choice = pick(*choices)
            if choice:
                return choice

    return pick(RuntimeType.CONTAINERD, RuntimeType.DOCKER, RuntimeType.LXC) or RuntimeType.DOCKER


def parse_runtime_type(value):
    if isinstance(value, RuntimeType):
        return value
    try:
        return RuntimeType(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown runtime type: {value}")


class RuntimeFactory:
    """Owns host facts and backend availability; hands out adapter instances"""

    def __init__(self, settings=None, host_root='/', probes=None, builders=None, sensor=None):
        self.settings = settings
        self.host_root = host_root
        self._sensor = sensor or (lambda: sense_host(self.host_root))
        self.probes = probes or {
            RuntimeType.DOCKER: DockerRuntime.probe,
            RuntimeType.CONTAINERD: ContainerdRuntime.probe,
            RuntimeType.LXC: LXCRuntime.probe,
        }
        self.builders = builders or {
            RuntimeType.DOCKER: DockerRuntime,
            RuntimeType.CONTAINERD: ContainerdRuntime,
            RuntimeType.LXC: self._build_lxc,
        }
        self._lock = threading.RLock()
        self._override = None
        self.host_info = None
        self.available = frozenset()
        self.detected_preferred = RuntimeType.DOCKER
        self.refresh()

    def _build_lxc(self):
        if self.settings is None:
            return LXCRuntime()
        return LXCRuntime(start_timeout=self.settings.lxc_start_timeout,
                          poll_interval=self.settings.lxc_poll_interval)

    def _probe(self, runtime_type):
        probe = self.probes.get(runtime_type)
        if probe is None:
            return False
        try:
            return bool(probe())
        except Exception as e:
            logger.warning(f"⚠️ Probe for {runtime_type.value} failed: {str(e)}")
            return False

    def refresh(self):
        """Re-sense the host and backend availability"""
        host = self._sensor()
        available = frozenset(t for t in RUNTIME_ORDER if self._probe(t))
        preferred = resolve_preferred_runtime(host, available)
        with self._lock:
            self.host_info = host
            self.available = available
            self.detected_preferred = preferred
            if self._override and self._override not in available:
                logger.warning(f"⚠️ Override {self._override.value} no longer available, clearing it")
                self._override = None

        names = ', '.join(t.value for t in self.available_runtimes()) or 'none'
        logger.info(f"🔍 Host: {host.os}/{host.architecture} {host.distribution or ''} | available: {names} | preferred: {preferred.value}")
        if not available:
            logger.warning("⚠️ No container backend available; deployments will fail until one is")
        return self.status()

    @property
    def preferred(self):
        with self._lock:
            return self._override or self.detected_preferred

    def available_runtimes(self):
        with self._lock:
            return [t for t in RUNTIME_ORDER if t in self.available]

    def is_available(self, runtime_type):
        return parse_runtime_type(runtime_type) in self.available

    def set_preferred(self, runtime_type):
        """Manual override, validated against availability"""
        runtime_type = parse_runtime_type(runtime_type)
        if runtime_type not in self.available:
            raise BackendUnavailableError(runtime_type)
        with self._lock:
            self._override = runtime_type
        logger.info(f"🔧 Preferred runtime overridden: {runtime_type.value}")
        return runtime_type

    def clear_override(self):
        with self._lock:
            self._override = None

    def create_runtime(self, runtime_type=None):
        runtime_type = parse_runtime_type(runtime_type) if runtime_type else self.preferred
        if runtime_type not in self.available:
            raise BackendUnavailableError(runtime_type)
        return self.builders[runtime_type]()

    def get_capabilities(self):
        """Instantiate each available adapter briefly and ask it about itself"""
        capabilities = {}
        for runtime_type in self.available_runtimes():
            try:
                runtime = self.create_runtime(runtime_type)
            except LaunchpadError as e:
                capabilities[runtime_type.value] = {'available': False, 'error': str(e)}
                continue
            try:
                capabilities[runtime_type.value] = runtime.get_runtime_info().to_dict()
            except LaunchpadError as e:
                capabilities[runtime_type.value] = {'available': False, 'error': str(e)}
            finally:
                runtime.close()
        return capabilities

    def status(self):
        with self._lock:
            return {
                'available': [t.value for t in RUNTIME_ORDER if t in self.available],
                'preferred': (self._override or self.detected_preferred).value,
                'detected_preferred': self.detected_preferred.value,
                'override': self._override.value if self._override else None,
                'host': self.host_info.to_dict() if self.host_info else {},
            }
