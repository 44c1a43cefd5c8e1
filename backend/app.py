from flask import Flask, request, jsonify, Response, stream_with_context
from flask_cors import CORS
import requests
import logging
import traceback
import werkzeug.exceptions
from datetime import datetime

from config import load_settings, configure_logging
from errors import LaunchpadError, NotFoundError, ValidationError
from runtime_types import RuntimeType, ContainerStatus
from runtime_factory import RuntimeFactory
from template_manager import TemplateManager, supported_images
from github_handler import GitHubHandler
from auto_detector import LanguageDetector
from image_pipeline import ImagePipeline
from log_broker import LogBroker
from secrets_manager import SecretBox
from env_manager import EnvVarManager, normalize_items
from db_manager import DatabaseManager
from deployment_manager import DeploymentManager, Status
from rate_limiter import RateLimiter, rate_limit, EXTENSION_KEY

logger = logging.getLogger(__name__)

DEFAULT_ENCRYPTION_KEY = 'change_this_encryption_key_in_production'


def create_app(settings=None, **components):
    """Build the Flask app; any component can be injected (tests do)"""
    settings = settings or load_settings()

    app = Flask(__name__)
    app.config['JSON_SORT_KEYS'] = False
    CORS(app, supports_credentials=True, origins=settings.cors_origins)

    db_manager = components.get('db') or DatabaseManager(settings)
    factory = components.get('factory') or RuntimeFactory(settings)
    templates = components.get('templates') or TemplateManager()
    broker = components.get('broker') or LogBroker(settings.log_queue_size, settings.sse_keepalive)

    if settings.encryption_key == DEFAULT_ENCRYPTION_KEY:
        logger.warning("⚠️ LAUNCHPAD_ENCRYPTION_KEY is the default; set it before storing real secrets")
    env_vars = components.get('env_vars') or EnvVarManager(db_manager, SecretBox(settings.encryption_key))

    deployments = components.get('deployments')
    if deployments is None:
        github = GitHubHandler()
        deployments = DeploymentManager(
            db=db_manager,
            factory=factory,
            templates=templates,
            pipeline=ImagePipeline(settings, github=github),
            broker=broker,
            env_vars=env_vars,
            detector=LanguageDetector(github),
            settings=settings
        )

    limiter = components['rate_limiter'] if 'rate_limiter' in components else RateLimiter(settings)
    if limiter is not None:
        app.extensions[EXTENSION_KEY] = limiter

    def app_view(row):
        view = dict(row)
        view['url'] = f"http://{settings.public_host}:{row['port']}" if row.get('port') else None
        return view

    def require_app(app_id):
        row = db_manager.get_app(app_id)
        if not row:
            raise NotFoundError(f"Application {app_id} not found")
        return row

    def json_body():
        data = request.get_json(silent=True)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        return data

    ###############################################
    # Platform status
    ###############################################

    @app.route('/health', methods=['GET'])
    def health():
        db_healthy = db_manager.ping()
        available = factory.available_runtimes()
        status = 'healthy' if db_healthy and available else 'unhealthy'
        return jsonify({
            'status': status,
            'database': db_manager.db_type if db_healthy else 'disconnected',
            'runtimes': [t.value for t in available],
            'timestamp': datetime.now().isoformat()
        }), 200 if status == 'healthy' else 503

    @app.route('/status', methods=['GET'])
    def runtime_status():
        status = factory.status()
        return jsonify({
            'available': status['available'],
            'preferred': status['preferred'],
            'override': status['override'],
            'host': status['host'],
            'supported_languages': templates.list_languages(),
            'supported_images': {
                runtime.value: supported_images(runtime) for runtime in factory.available_runtimes()
            }
        })

    @app.route('/status/capabilities', methods=['GET'])
    def runtime_capabilities():
        return jsonify(factory.get_capabilities())

    @app.route('/status/refresh', methods=['POST'])
    def refresh_runtimes():
        return jsonify(factory.refresh())

    @app.route('/status/preferred', methods=['PUT'])
    def set_preferred_runtime():
        data = json_body()
        if data.get('runtime_type'):
            factory.set_preferred(data['runtime_type'])
        else:
            factory.clear_override()
        return jsonify(factory.status())

    @app.route('/templates', methods=['GET'])
    def list_templates():
        return jsonify(templates.list_templates())

    @app.route('/templates/<language>', methods=['GET'])
    def get_template(language):
        return jsonify(templates.get_info(language))

    ###############################################
    # Deployments
    ###############################################

    @app.route('/deploy', methods=['POST'])
    @rate_limit(limit_type='deploy')
    def deploy():
        data = json_body()
        row, created = deployments.accept(
            repo_url=data.get('repo_url'),
            name=data.get('name'),
            runtime_type=data.get('runtime_type'),
            language=data.get('language'),
            env_vars=data.get('env_vars'),
            github_token=data.get('github_token')
        )
        status = Status.DEPLOYING if created else Status.REDEPLOYING
        body = app_view(row)
        body.update({
            'status': status.value,
            'logs_url': f"/apps/{row['id']}/logs",
            'message': 'Deployment started' if created else 'Redeployment started'
        })
        return jsonify(body), 201 if created else 200

    @app.route('/apps', methods=['GET'])
    @rate_limit(limit_type='api')
    def list_apps():
        return jsonify([app_view(row) for row in db_manager.list_apps()])

    @app.route('/apps/<app_id>', methods=['GET'])
    @rate_limit(limit_type='api')
    def get_app(app_id):
        return jsonify(app_view(require_app(app_id)))

    @app.route('/apps/<app_id>', methods=['DELETE'])
    @rate_limit(limit_type='api')
    def delete_app(app_id):
        deployments.delete(app_id)
        return jsonify({'message': 'Application deleted successfully', 'id': app_id})

    @app.route('/apps/<app_id>/health', methods=['GET'])
    @rate_limit(limit_type='api')
    def app_health(app_id):
        row = require_app(app_id)
        if not row.get('container_id') or not row.get('runtime_type'):
            return jsonify({
                'healthy': False,
                'status': row['status'],
                'message': 'No container deployed',
                'details': {}
            })

        details = {'container_id': row['container_id'], 'runtime': row['runtime_type']}
        try:
            runtime = factory.create_runtime(row['runtime_type'])
            try:
                container = runtime.get_container(row['container_id'])
                host = 'localhost'
                if runtime.runtime_type == RuntimeType.LXC:
                    host = runtime.get_container_ip(row['container_id'])
            finally:
                runtime.close()
        except LaunchpadError as e:
            return jsonify({'healthy': False, 'status': row['status'], 'message': str(e), 'details': details})

        details['container_status'] = container.status.value
        if container.status != ContainerStatus.RUNNING:
            return jsonify({
                'healthy': False,
                'status': row['status'],
                'message': f"Container is {container.status.value}",
                'details': details
            })

        try:
            resp = requests.get(f"http://{host}:{row['port']}", timeout=5)
            details['http_status'] = resp.status_code
            healthy = resp.status_code < 500
            message = 'Application responding' if healthy else f"Application returned {resp.status_code}"
        except requests.exceptions.Timeout:
            healthy, message = False, 'Application timed out'
        except requests.exceptions.RequestException as e:
            healthy, message = False, f"Application not reachable: {str(e)}"

        return jsonify({'healthy': healthy, 'status': row['status'], 'message': message, 'details': details})

    ###############################################
    # Environment variables
    ###############################################

    @app.route('/apps/<app_id>/env', methods=['GET'])
    @rate_limit(limit_type='api')
    def list_env(app_id):
        return jsonify({'app_id': app_id, 'env_vars': env_vars.list(app_id)})

    @app.route('/apps/<app_id>/env', methods=['POST'])
    @rate_limit(limit_type='api')
    def create_env(app_id):
        data = json_body()
        created = env_vars.create(app_id, data.get('key') or data.get('name'), data.get('value'),
                                  data.get('secret', data.get('is_secret')))
        return jsonify(created), 201

    @app.route('/apps/<app_id>/env', methods=['PUT'])
    @rate_limit(limit_type='api')
    def replace_env(app_id):
        require_app(app_id)
        items = normalize_items(json_body().get('env_vars', []))
        env_vars.replace(app_id, items)
        return jsonify({'app_id': app_id, 'env_vars': env_vars.list(app_id)})

    @app.route('/apps/<app_id>/env/<key>', methods=['GET'])
    @rate_limit(limit_type='api')
    def get_env(app_id, key):
        return jsonify(env_vars.get(app_id, key))

    @app.route('/apps/<app_id>/env/<key>', methods=['PUT'])
    @rate_limit(limit_type='api')
    def update_env(app_id, key):
        data = json_body()
        return jsonify(env_vars.update(app_id, key, data.get('value'), data.get('secret', data.get('is_secret'))))

    @app.route('/apps/<app_id>/env/<key>', methods=['DELETE'])
    @rate_limit(limit_type='api')
    def delete_env(app_id, key):
        env_vars.delete(app_id, key)
        return jsonify({'message': f"Environment variable {key} deleted"})

    ###############################################
    # Log stream
    ###############################################

    @app.route('/apps/<app_id>/logs', methods=['GET'])
    def stream_logs(app_id):
        row = require_app(app_id)
        runtime = None
        container_id = row.get('container_id')
        if container_id and row.get('runtime_type') and row['status'] == Status.RUNNING.value:
            try:
                runtime = factory.create_runtime(row['runtime_type'])
            except LaunchpadError as e:
                logger.warning(f"⚠️ Container logs unavailable for {app_id}: {str(e)}")

        def generate():
            try:
                yield from broker.stream(app_id, runtime, container_id)
            finally:
                if runtime is not None:
                    runtime.close()

        response = Response(stream_with_context(generate()), mimetype='text/event-stream')
        response.headers['X-Accel-Buffering'] = 'no'
        response.headers['Cache-Control'] = 'no-cache'
        return response

    ###############################################
    # Maintenance / diagnostics
    ###############################################

    @app.route('/maintenance/prune-images', methods=['POST'])
    def prune_images():
        report = deployments.prune_images(json_body().get('runtime_type'))
        return jsonify({'message': 'Dangling images pruned', **report})

    def backend_status(runtime_type):
        if not factory.is_available(runtime_type):
            return jsonify({
                'available': False,
                'runtime': runtime_type.value,
                'message': f"{runtime_type.value} is not available on this host"
            }), 503
        runtime = factory.create_runtime(runtime_type)
        try:
            info = runtime.get_runtime_info().to_dict()
            containers = [c.to_dict() for c in runtime.list_containers()]
        finally:
            runtime.close()
        return jsonify({'available': True, 'runtime': runtime_type.value, 'info': info, 'containers': containers})

    @app.route('/lxc/status', methods=['GET'])
    def lxc_status():
        return backend_status(RuntimeType.LXC)

    @app.route('/docker/status', methods=['GET'])
    def docker_status():
        return backend_status(RuntimeType.DOCKER)

    ###############################################
    # Errors
    ###############################################

    @app.errorhandler(LaunchpadError)
    def handle_launchpad_error(e):
        if e.status_code >= 500:
            logger.error(f"❌ {type(e).__name__}: {str(e)}")
        return jsonify({'error': str(e), 'type': type(e).__name__}), e.status_code

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({'error': 'Endpoint not found'}), 404

    @app.errorhandler(500)
    def internal_error(e):
        return jsonify({'error': 'Internal server error'}), 500

    @app.errorhandler(Exception)
    def handle_exception(e):
        if isinstance(e, werkzeug.exceptions.HTTPException):
            return jsonify({'error': e.description}), e.code
        logger.error(f"Unhandled exception: {traceback.format_exc()}")
        return jsonify({'error': str(e), 'type': type(e).__name__}), 500

    app.extensions['launchpad'] = {
        'db': db_manager,
        'factory': factory,
        'templates': templates,
        'broker': broker,
        'env_vars': env_vars,
        'deployments': deployments,
    }
    return app


def main():
    settings = load_settings()
    configure_logging(settings)
    app = create_app(settings)
    logger.info(f"🚀 Launchpad control plane listening on {settings.host}:{settings.port}")
    app.run(host=settings.host, port=settings.port, threaded=True)


if __name__ == '__main__':
    main()
