"""
Deployment Orchestrator
Runs detect -> render -> tag -> build -> run -> finalize for an application,
one pipeline at a time per application id
"""
import time
import uuid
import socket
import random
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from errors import (
    LaunchpadError, ValidationError, ConflictError, BuildError,
    BackendUnavailableError, InvalidTransitionError, NotFoundError, RuntimeBackendError
)
from env_manager import normalize_items
from runtime_factory import parse_runtime_type
from runtime_types import RuntimeType, CreateContainerRequest, PortMapping, supports_images

logger = logging.getLogger(__name__)


class Status(str, Enum):
    IDLE = 'idle'
    DEPLOYING = 'deploying'
    RUNNING = 'running'
    ERROR = 'error'
    REDEPLOYING = 'redeploying'


ALLOWED_TRANSITIONS = {
    Status.IDLE: {Status.DEPLOYING},
    Status.DEPLOYING: {Status.RUNNING, Status.ERROR},
    Status.RUNNING: {Status.REDEPLOYING},
    Status.ERROR: {Status.REDEPLOYING},
    Status.REDEPLOYING: {Status.RUNNING, Status.ERROR},
}

IN_FLIGHT = (Status.DEPLOYING, Status.REDEPLOYING)


def check_transition(current, target):
    current, target = Status(current), Status(target)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(f"Invalid status transition {current.value} -> {target.value}")
    return target


def generate_app_id(clock=time.time_ns):
    now = clock()
    return f"app_{now // 1_000_000_000}_{now % 1_000_000}"


def app_name_from_url(repo_url):
    name = repo_url.rstrip('/').rsplit('/', 1)[-1].rsplit(':', 1)[-1]
    if name.endswith('.git'):
        name = name[:-4]
    return name or 'app'


def port_is_free(port):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(('0.0.0.0', port))
            return True
        except OSError:
            return False


def _validate_repo_url(repo_url):
    if not repo_url or not isinstance(repo_url, str):
        raise ValidationError("repo_url is required")
    repo_url = repo_url.strip()
    if not repo_url.startswith(('https://', 'http://', 'git@')):
        raise ValidationError(f"Unsupported repository URL: {repo_url}")
    return repo_url


@dataclass
class DeployRequest:
    runtime_type: Optional[RuntimeType] = None
    language: Optional[str] = None
    github_token: Optional[str] = None
    env_vars: Optional[list] = None


class DeploymentManager:
    def __init__(self, db, factory, templates, pipeline, broker, env_vars, detector,
                 settings=None, executor_factory=None, port_probe=port_is_free, background=None):
        self.db = db
        self.factory = factory
        self.templates = templates
        self.pipeline = pipeline
        self.broker = broker
        self.env_vars = env_vars
        self.detector = detector
        self.public_host = settings.public_host if settings else 'localhost'
        self.port_range = (settings.app_port_min, settings.app_port_max) if settings else (3000, 9999)
        self._executor_factory = executor_factory or (
            lambda app_id: ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"deploy-{app_id}")
        )
        self._port_probe = port_probe
        self._background = background or self._spawn
        self._executors = {}
        self._executors_lock = threading.Lock()
        self._accept_lock = threading.Lock()

    @staticmethod
    def _spawn(target, *args):
        threading.Thread(target=target, args=args, daemon=True).start()

    ###############################################
    # Request intake
    ###############################################

    def _executor(self, app_id):
        with self._executors_lock:
            executor = self._executors.get(app_id)
            if executor is None:
                executor = self._executor_factory(app_id)
                self._executors[app_id] = executor
            return executor

    def submit(self, app_id, request):
        """Queue a pipeline; pipelines for one app run strictly one after another"""
        return self._executor(app_id).submit(self.run_pipeline, app_id, request)

    def allocate_port(self, attempts=100):
        low, high = self.port_range
        taken = {app['port'] for app in self.db.list_apps() if app.get('port')}
        for _ in range(attempts):
            port = random.randint(low, high)
            if port not in taken and self._port_probe(port):
                return port
        raise LaunchpadError(f"No free port found in {low}-{high}")

    def accept(self, repo_url, name=None, runtime_type=None, language=None, env_vars=None, github_token=None):
        """Persist or load the application and queue its pipeline

        Returns (app, created). Validation happens before any row is written.
        """
        repo_url = _validate_repo_url(repo_url)
        runtime = None
        if runtime_type:
            runtime = parse_runtime_type(runtime_type)
            if not self.factory.is_available(runtime):
                raise BackendUnavailableError(runtime)
        request = DeployRequest(
            runtime_type=runtime,
            language=self.templates.normalize(language) if language else None,
            github_token=github_token or None,
            env_vars=normalize_items(env_vars) if env_vars is not None else None
        )

        with self._accept_lock:
            app = self.db.get_app_by_repo_url(repo_url)
            created = False
            if app is None:
                record = {
                    'id': generate_app_id(),
                    'name': (name or app_name_from_url(repo_url)).strip(),
                    'repo_url': repo_url,
                    'language': request.language,
                    'port': self.allocate_port(),
                    'runtime_type': runtime.value if runtime else None,
                    'status': Status.IDLE.value,
                }
                try:
                    app = self.db.create_app(record)
                    created = True
                except ConflictError:
                    app = self.db.get_app_by_repo_url(repo_url)
                    if app is None:
                        raise

            self.submit(app['id'], request)

        if created:
            logger.info(f"🆕 Application {app['id']} created for {repo_url}")
        else:
            logger.info(f"🔁 Redeploy queued for {app['id']}")
        return app, created

    ###############################################
    # Pipeline
    ###############################################

    def _publish(self, app_id, msg_type, message):
        self.broker.publish_log(app_id, msg_type, message)

    def _transition(self, app_id, target, **fields):
        app = self.db.get_app(app_id)
        if app is None:
            raise NotFoundError(f"Application {app_id} not found")
        check_transition(app['status'], target)
        updated = self.db.update_app(app_id, status=Status(target).value, **fields)
        self._publish(app_id, 'info', f"Status: {Status(target).value}")
        return updated

    def _fail(self, app_id, error):
        message = str(error) or type(error).__name__
        logger.error(f"❌ Deployment of {app_id} failed: {message}")
        app = self.db.get_app(app_id)
        if app is not None and Status(app['status']) in IN_FLIGHT:
            self._transition(app_id, Status.ERROR, error_msg=message)
        self._publish(app_id, 'error', f"❌ Deployment failed: {message}")

    def run_pipeline(self, app_id, request):
        """Executed on the application's serial executor"""
        app = self.db.get_app(app_id)
        if app is None:
            logger.warning(f"⚠️ Application {app_id} vanished before its pipeline started")
            return None

        status = Status(app['status'])
        if status in IN_FLIGHT:
            # Left behind by an interrupted run
            self._transition(app_id, Status.ERROR, error_msg='Previous deployment was interrupted')
            status = Status.ERROR
        fresh = status == Status.IDLE
        target = Status.DEPLOYING if fresh else Status.REDEPLOYING

        try:
            self._transition(app_id, target, error_msg=None)
        except LaunchpadError as e:
            logger.error(f"❌ Cannot start pipeline for {app_id}: {str(e)}")
            return None

        self._publish(app_id, 'info', f"🚀 {'Deploying' if fresh else 'Redeploying'} {app['name']}")
        try:
            if request.env_vars is not None:
                self.env_vars.replace(app_id, request.env_vars)
            runtime = self.factory.create_runtime(request.runtime_type)
        except Exception as e:
            self._fail(app_id, e)
            return None

        try:
            with runtime.subscribe(self.broker.event_callback(app_id)):
                return self._execute(app, request, runtime, fresh)
        except Exception as e:
            self._fail(app_id, e)
            return None
        finally:
            runtime.close()

    def _execute(self, app, request, runtime, fresh):
        app_id = app['id']

        if not fresh:
            self._remove_previous(app)

        # 1. language
        language = request.language or (None if fresh else app.get('language'))
        if not language:
            self._publish(app_id, 'info', '🔍 Detecting language...')
            language = self.detector.detect(app['repo_url'], token=request.github_token)
        self.db.update_app(app_id, language=language)
        self._publish(app_id, 'info', f"🧭 Language: {language}")

        # 2. descriptor
        rendered = self.templates.render(
            language,
            app_name=app['name'],
            app_id=app_id,
            port=app['port'],
            repo_url=app['repo_url'],
            environment=self.env_vars.plain(app_id)
        )
        self._publish(app_id, 'info', f"📝 Build descriptor rendered from {rendered.language} template")

        # 3. tag
        tag = self.pipeline.tag_for(app_id, app['repo_url'], token=request.github_token)
        self._publish(app_id, 'info', f"🏷️ Image tag: {tag}")

        # 4. build + resolve
        builder, borrowed = self._builder_for(runtime)
        try:
            if borrowed:
                with builder.subscribe(self.broker.event_callback(app_id)):
                    image_id = self._build(app_id, builder, tag, rendered.descriptor)
            else:
                image_id = self._build(app_id, builder, tag, rendered.descriptor)
        finally:
            if borrowed:
                builder.close()
        builder_type = builder.runtime_type

        # 5. container
        environment = dict(rendered.environment)
        environment.update(self.env_vars.resolve(app_id))
        environment.update({
            'PORT': str(app['port']),
            'LAUNCHPAD_APP_ID': app_id,
            'LAUNCHPAD_APP_NAME': app['name'],
        })
        container_request = CreateContainerRequest(
            name=f"{tag}-{uuid.uuid4().hex[:6]}",
            image=tag,
            command=rendered.command,
            working_dir=rendered.working_dir,
            environment=environment,
            labels=rendered.labels,
            ports=[PortMapping(host_port=app['port'], container_port=app['port'])],
            restart_policy='unless-stopped'
        )
        self._publish(app_id, 'info', f"📦 Starting container on {runtime.runtime_type.value}...")
        container = runtime.create_container(container_request)
        try:
            runtime.start_container(container.id)
        except Exception:
            self._discard(runtime, container.id)
            raise

        # 6. finalize
        self._transition(
            app_id, Status.RUNNING,
            container_id=container.id,
            image_id=image_id,
            runtime_type=runtime.runtime_type.value,
            error_msg=None
        )
        url = f"http://{self.public_host}:{app['port']}"
        logger.info(f"✅ {app_id} running at {url}")
        self._publish(app_id, 'success', f"✅ Deployed {app['name']} at {url}")

        # 7. housekeeping
        self._background(self._housekeeping, builder_type, app_id)
        return container

    def _build(self, app_id, builder, tag, descriptor):
        self._publish(app_id, 'info', f"🔨 Building image {tag}...")
        image_id = self.pipeline.build_and_resolve(
            builder, tag, descriptor,
            on_line=lambda line: self._publish(app_id, 'log', line)
        )
        self._publish(app_id, 'info', f"✅ Image ready: {image_id[:19]}")
        return image_id

    def _builder_for(self, runtime):
        """The selected backend if it builds images, otherwise a Docker instance"""
        if supports_images(runtime):
            return runtime, False
        if self.factory.is_available(RuntimeType.DOCKER):
            return self.factory.create_runtime(RuntimeType.DOCKER), True
        raise BuildError(f"{runtime.runtime_type.value} cannot build images and Docker is not available")

    def _discard(self, runtime, container_id):
        try:
            runtime.remove_container(container_id)
        except RuntimeBackendError as e:
            logger.warning(f"⚠️ Could not remove failed container {container_id}: {str(e)}")

    def _remove_previous(self, app):
        """Stop and remove the app's current container; never fatal"""
        container_id = app.get('container_id')
        if not container_id or not app.get('runtime_type'):
            return
        self._publish(app['id'], 'info', f"🛑 Removing previous container {container_id[:12]}")
        try:
            old_runtime = self.factory.create_runtime(app['runtime_type'])
        except LaunchpadError as e:
            logger.warning(f"⚠️ Previous runtime {app['runtime_type']} unavailable: {str(e)}")
            self._publish(app['id'], 'warning', f"Could not reach previous runtime: {str(e)}")
            return
        try:
            try:
                old_runtime.stop_container(container_id)
            except RuntimeBackendError as e:
                logger.warning(f"⚠️ Stop of previous container failed: {str(e)}")
            try:
                old_runtime.remove_container(container_id)
            except RuntimeBackendError as e:
                logger.warning(f"⚠️ Removal of previous container failed: {str(e)}")
                self._publish(app['id'], 'warning', f"Previous container not removed: {str(e)}")
            else:
                self.db.update_app(app['id'], container_id=None)
        finally:
            old_runtime.close()

    def _housekeeping(self, runtime_type, app_id):
        try:
            runtime = self.factory.create_runtime(runtime_type)
        except Exception as e:
            logger.warning(f"⚠️ Housekeeping skipped for {app_id}: {str(e)}")
            return
        try:
            self.pipeline.housekeeping(runtime, app_id)
        except Exception as e:
            logger.warning(f"⚠️ Housekeeping failed for {app_id}: {str(e)}")
        finally:
            runtime.close()

    ###############################################
    # Application removal / maintenance
    ###############################################

    def delete(self, app_id):
        """Queued behind any pipeline already accepted for the app"""
        if self.db.get_app(app_id) is None:
            raise NotFoundError(f"Application {app_id} not found")

        self._executor(app_id).submit(self._teardown, app_id).result()

        with self._executors_lock:
            executor = self._executors.pop(app_id, None)
        if executor is not None:
            executor.shutdown(wait=False)
        logger.info(f"🗑️ Application {app_id} deleted")

    def _teardown(self, app_id):
        app = self.db.get_app(app_id)
        if app is None:
            raise NotFoundError(f"Application {app_id} not found")

        if app.get('container_id') and app.get('runtime_type'):
            self._remove_previous(app)
        if app.get('runtime_type'):
            self._remove_images(app)
        self.db.delete_app(app_id)

    def _remove_images(self, app):
        try:
            runtime = self.factory.create_runtime(app['runtime_type'])
        except LaunchpadError as e:
            logger.warning(f"⚠️ Image cleanup skipped for {app['id']}: {str(e)}")
            return
        try:
            if not supports_images(runtime):
                return
            self.pipeline.cleanup_old_images(runtime, app['id'], keep=0)
            self.pipeline.prune_dangling(runtime)
        except LaunchpadError as e:
            logger.warning(f"⚠️ Image cleanup failed for {app['id']}: {str(e)}")
        finally:
            runtime.close()

    def prune_images(self, runtime_type=None):
        """Prune dangling images on one backend (default: preferred)"""
        runtime = self.factory.create_runtime(runtime_type)
        try:
            if not supports_images(runtime):
                raise ValidationError(f"{runtime.runtime_type.value} does not manage images")
            report = self.pipeline.prune_dangling(runtime)
        finally:
            runtime.close()
        report['runtime'] = runtime.runtime_type.value
        return report

    def shutdown(self):
        with self._executors_lock:
            executors = list(self._executors.values())
            self._executors.clear()
        for executor in executors:
            executor.shutdown(wait=False)
