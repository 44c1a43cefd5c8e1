"""
containerd adapter
There is no control-API integration yet: every operation fails explicitly and
the availability probe always answers False, so the factory never prefers it
"""
import os
import logging
import platform

from errors import RuntimeBackendError
from runtime_types import RuntimeType, RuntimeInfo, EventHub

logger = logging.getLogger(__name__)

CONTAINERD_SOCKET = '/run/containerd/containerd.sock'


class ContainerdRuntime:
    runtime_type = RuntimeType.CONTAINERD

    def __init__(self, socket_path=CONTAINERD_SOCKET):
        self.socket_path = socket_path
        self.events = EventHub(RuntimeType.CONTAINERD)

    @staticmethod
    def socket_present(socket_path=CONTAINERD_SOCKET):
        return os.path.exists(socket_path)

    @staticmethod
    def probe(socket_path=CONTAINERD_SOCKET):
        # A present socket is reported for diagnostics only
        if ContainerdRuntime.socket_present(socket_path):
            logger.debug(f"containerd socket found at {socket_path}, integration not implemented")
        return False

    def _unsupported(self, operation, container_id=''):
        self.events.emit(f"{operation}_error", f"{operation} not supported by this backend", container_id)
        raise RuntimeBackendError(RuntimeType.CONTAINERD, f"{operation} not supported by this backend")

    def get_runtime_info(self):
        return RuntimeInfo(
            type=RuntimeType.CONTAINERD,
            version='unknown',
            os=platform.system().lower(),
            architecture=platform.machine(),
            available=False,
            capabilities=[],
            metadata={
                'socket': self.socket_path,
                'socket_present': self.socket_present(self.socket_path),
                'note': 'control API integration not implemented',
            }
        )

    def create_container(self, request):
        self._unsupported('container_create', request.name)

    def start_container(self, container_id):
        self._unsupported('container_start', container_id)

    def stop_container(self, container_id):
        self._unsupported('container_stop', container_id)

    def restart_container(self, container_id):
        self._unsupported('container_restart', container_id)

    def remove_container(self, container_id):
        self._unsupported('container_remove', container_id)

    def get_container(self, container_id):
        self._unsupported('container_inspect', container_id)

    def list_containers(self):
        self._unsupported('container_list')

    def get_container_logs(self, container_id, follow=False):
        self._unsupported('container_logs', container_id)

    def execute_command(self, container_id, argv):
        self._unsupported('container_exec', container_id)

    def get_container_ip(self, container_id):
        self._unsupported('container_inspect', container_id)

    def subscribe(self, callback):
        return self.events.subscribe(callback)

    def close(self):
        self.events.clear()
