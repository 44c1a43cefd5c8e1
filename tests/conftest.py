import pytest
from concurrent.futures import Future
from unittest.mock import Mock

from config import Settings
from db_manager import DatabaseManager
from errors import RuntimeBackendError, ContainerNotFoundError
from runtime_factory import RuntimeFactory, HostInfo
from runtime_types import (
    RuntimeType, ContainerStatus, Container, ContainerConfig, NetworkInfo,
    ExecResult, RuntimeInfo, EventHub
)
from template_manager import TemplateManager
from image_pipeline import ImagePipeline
from log_broker import LogBroker
from secrets_manager import SecretBox
from env_manager import EnvVarManager
from deployment_manager import DeploymentManager


class FakeRuntime:
    """In-memory backend adapter used in place of a real engine"""

    def __init__(self, runtime_type=RuntimeType.DOCKER, capabilities=('build', 'run', 'logs', 'exec'),
                 build_stream=None, register_tag=True, fail_on=()):
        self.runtime_type = runtime_type
        self.events = EventHub(runtime_type)
        self.capabilities = list(capabilities)
        self.build_stream = build_stream if build_stream is not None else [
            {'stream': 'Step 1/2 : FROM python:3.13-alpine\n'},
            {'stream': 'Successfully built abc123\n'},
        ]
        self.register_tag = register_tag
        self.fail_on = set(fail_on)
        self.images = {}
        self.image_list = []
        self.containers = {}
        self.created = []
        self.calls = []
        self.contexts = []
        self.lookups = 0
        self.log_chunks = []
        self.close_count = 0

    def _maybe_fail(self, op):
        if op in self.fail_on:
            raise RuntimeBackendError(self.runtime_type, f"{op} failed")

    def get_runtime_info(self):
        return RuntimeInfo(type=self.runtime_type, version='test', os='linux', architecture='amd64',
                           available=True, capabilities=list(self.capabilities))

    def create_container(self, request):
        self.calls.append(('create', request.name))
        self._maybe_fail('create')
        container_id = f"c{len(self.created) + 1}"
        container = Container(
            id=container_id, name=request.name, image=request.image, status=ContainerStatus.CREATED,
            runtime=self.runtime_type,
            config=ContainerConfig(environment=dict(request.environment), labels=dict(request.labels)),
            network=NetworkInfo(ports=list(request.ports))
        )
        self.containers[container_id] = container
        self.created.append(request)
        self.events.emit('container_create', 'Creating container', container_id)
        return container

    def _get(self, container_id):
        if container_id not in self.containers:
            raise ContainerNotFoundError(self.runtime_type, f"{container_id} not found")
        return self.containers[container_id]

    def start_container(self, container_id):
        self.calls.append(('start', container_id))
        self._maybe_fail('start')
        self._get(container_id).status = ContainerStatus.RUNNING

    def stop_container(self, container_id):
        self.calls.append(('stop', container_id))
        self._maybe_fail('stop')
        self._get(container_id).status = ContainerStatus.STOPPED

    def restart_container(self, container_id):
        self.calls.append(('restart', container_id))
        self._get(container_id).status = ContainerStatus.RUNNING

    def remove_container(self, container_id):
        self.calls.append(('remove', container_id))
        self._maybe_fail('remove')
        self._get(container_id)
        del self.containers[container_id]

    def get_container(self, container_id):
        return self._get(container_id)

    def list_containers(self):
        return list(self.containers.values())

    def get_container_logs(self, container_id, follow=False):
        self._get(container_id)
        return iter(self.log_chunks)

    def execute_command(self, container_id, argv):
        return ExecResult(output=' '.join(argv))

    def get_container_ip(self, container_id):
        return '10.0.3.15'

    def build_image(self, tag, context):
        self.calls.append(('build', tag))
        self.contexts.append(context)
        self._maybe_fail('build')
        for chunk in self.build_stream:
            yield chunk
        if self.register_tag:
            self.images[tag] = f"sha256:{tag}"

    def find_image_by_tag(self, tag):
        self.lookups += 1
        return self.images.get(tag)

    def list_images(self):
        return list(self.image_list)

    def remove_image(self, image_id):
        self.calls.append(('remove_image', image_id))
        self._maybe_fail('remove_image')
        self.image_list = [img for img in self.image_list if img['id'] != image_id]

    def prune_dangling_images(self):
        self.calls.append(('prune', None))
        self._maybe_fail('prune')
        return {'deleted': 0, 'space_reclaimed': 0}

    def subscribe(self, callback):
        return self.events.subscribe(callback)

    def close(self):
        self.close_count += 1


class InlineExecutor:
    """Runs submitted work immediately on the caller's thread"""

    def __init__(self):
        self.submitted = 0

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    def shutdown(self, wait=True):
        pass


def make_factory(runtimes, host=None):
    """runtimes: {RuntimeType: adapter instance}; everything else is unavailable"""
    host = host or HostInfo(os='linux', architecture='amd64', distribution='arch')
    return RuntimeFactory(
        probes={t: (lambda t=t: t in runtimes) for t in RuntimeType},
        builders={t: (lambda t=t: runtimes[t]) for t in runtimes},
        sensor=lambda: host
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_type='sqlite',
        database_path=str(tmp_path / 'db' / 'launchpad.db'),
        encryption_key='test-encryption-key',
        tag_lookup_delay=0,
        sse_keepalive=0.05,
        public_host='localhost',
        log_file=''
    )


@pytest.fixture
def db(settings):
    return DatabaseManager(settings)


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def factory(fake_runtime):
    return make_factory({RuntimeType.DOCKER: fake_runtime})


@pytest.fixture
def broker():
    return LogBroker(queue_size=100, keepalive=0.05)


@pytest.fixture
def env_vars(db, settings):
    return EnvVarManager(db, SecretBox(settings.encryption_key))


@pytest.fixture
def detector():
    return Mock(detect=Mock(return_value='python'))


@pytest.fixture
def github():
    return Mock(get_latest_commit=Mock(return_value='deadbeefcafebabe0123'))


@pytest.fixture
def pipeline(settings, github):
    return ImagePipeline(settings, github=github, sleep=lambda seconds: None)


@pytest.fixture
def executor():
    return InlineExecutor()


@pytest.fixture
def manager(db, factory, pipeline, broker, env_vars, detector, settings, executor):
    return DeploymentManager(
        db=db,
        factory=factory,
        templates=TemplateManager(),
        pipeline=pipeline,
        broker=broker,
        env_vars=env_vars,
        detector=detector,
        settings=settings,
        executor_factory=lambda app_id: executor,
        port_probe=lambda port: True,
        background=lambda target, *args: target(*args)
    )
