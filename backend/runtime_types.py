"""
Shared container-runtime contract
Every backend adapter (Docker, containerd, LXC) implements ContainerRuntime
"""
import logging
import threading
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class RuntimeType(str, Enum):
    DOCKER = 'docker'
    CONTAINERD = 'containerd'
    LXC = 'lxc'


class ContainerStatus(str, Enum):
    CREATED = 'created'
    RUNNING = 'running'
    STOPPED = 'stopped'
    PAUSED = 'paused'
    EXITED = 'exited'
    ERROR = 'error'


@dataclass
class PortMapping:
    host_port: int
    container_port: int
    protocol: str = 'tcp'


@dataclass
class ResourceConfig:
    memory: int = 0          # bytes
    cpu_shares: int = 0
    cpu_limit: int = 0       # nano cpus


@dataclass
class ContainerConfig:
    command: List[str] = field(default_factory=list)
    working_dir: str = ''
    environment: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    restart_policy: str = ''


@dataclass
class NetworkInfo:
    ip_address: str = ''
    ports: List[PortMapping] = field(default_factory=list)
    network_mode: str = ''


@dataclass
class CreateContainerRequest:
    name: str
    image: str
    command: List[str] = field(default_factory=list)
    working_dir: str = ''
    environment: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    ports: List[PortMapping] = field(default_factory=list)
    resources: Optional[ResourceConfig] = None
    network_mode: str = 'bridge'
    restart_policy: str = 'unless-stopped'
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Container:
    id: str
    name: str
    image: str
    status: ContainerStatus
    runtime: RuntimeType
    config: ContainerConfig = field(default_factory=ContainerConfig)
    network: NetworkInfo = field(default_factory=NetworkInfo)
    resources: Optional[ResourceConfig] = None
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None

    def to_dict(self):
        data = asdict(self)
        data['status'] = self.status.value
        data['runtime'] = self.runtime.value
        for key in ('created_at', 'started_at', 'stopped_at'):
            if data[key]:
                data[key] = data[key].isoformat()
        return data


@dataclass
class ExecResult:
    output: str
    error: str = ''
    exit_code: int = 0


@dataclass
class RuntimeInfo:
    type: RuntimeType
    version: str
    os: str
    architecture: str
    available: bool
    capabilities: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self):
        data = asdict(self)
        data['type'] = self.type.value
        return data


@dataclass
class Event:
    """Ephemeral backend event; never persisted"""
    type: str
    message: str
    runtime: RuntimeType
    container_id: str = ''
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


EventCallback = Callable[[Event], None]


class Subscription:
    """Handle returned by EventHub.subscribe; cancel() stops delivery"""

    def __init__(self, hub, callback):
        self._hub = hub
        self.callback = callback
        self.active = True

    def cancel(self):
        if self.active:
            self.active = False
            self._hub._remove(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cancel()
        return False


class EventHub:
    """Per-adapter event fan-out to live subscriptions"""

    def __init__(self, runtime_type: RuntimeType):
        self.runtime_type = runtime_type
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: EventCallback) -> Subscription:
        sub = Subscription(self, callback)
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def _remove(self, sub):
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def emit(self, event_type, message, container_id='', **metadata):
        event = Event(
            type=event_type,
            message=message,
            runtime=self.runtime_type,
            container_id=container_id,
            metadata=metadata
        )
        with self._lock:
            targets = list(self._subscriptions)
        for sub in targets:
            try:
                sub.callback(event)
            except Exception as e:
                logger.warning(f"⚠️ Event subscriber failed on {event_type}: {str(e)}")
        return event

    def clear(self):
        with self._lock:
            for sub in self._subscriptions:
                sub.active = False
            self._subscriptions = []


@runtime_checkable
class ContainerRuntime(Protocol):
    """Capability set every backend adapter provides"""

    runtime_type: RuntimeType

    def get_runtime_info(self) -> RuntimeInfo: ...

    def create_container(self, request: CreateContainerRequest) -> Container: ...

    def start_container(self, container_id: str) -> None: ...

    def stop_container(self, container_id: str) -> None: ...

    def restart_container(self, container_id: str) -> None: ...

    def remove_container(self, container_id: str) -> None: ...

    def get_container(self, container_id: str) -> Container: ...

    def list_containers(self) -> List[Container]: ...

    def get_container_logs(self, container_id: str, follow: bool = False) -> Iterator[bytes]: ...

    def execute_command(self, container_id: str, argv: List[str]) -> ExecResult: ...

    def get_container_ip(self, container_id: str) -> str: ...

    def subscribe(self, callback: EventCallback) -> Subscription: ...

    def close(self) -> None: ...


def supports_images(runtime) -> bool:
    """True when the adapter can build and index images"""
    return 'build' in runtime.get_runtime_info().capabilities
