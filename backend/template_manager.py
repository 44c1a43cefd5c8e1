"""
Template Engine
Language -> build/run configuration, rendered into a build descriptor with Jinja2
"""
import json
import shlex
import logging
import threading
from copy import deepcopy
from dataclasses import dataclass, field, asdict
from typing import Dict, List

import jinja2

from errors import BuildError, ValidationError, ConflictError, NotFoundError
from runtime_types import RuntimeType

logger = logging.getLogger(__name__)

GENERIC = 'generic'

ALIASES = {
    'node': 'javascript',
    'nodejs': 'javascript',
    'js': 'javascript',
    'py': 'python',
    'rs': 'rust',
    'golang': 'go',
}

APP_ID_LABEL = 'launchpad.app_id'
APP_NAME_LABEL = 'launchpad.app_name'

DESCRIPTOR = """FROM {{ base_image }}
{% for step in setup_steps %}RUN {{ step }}
{% endfor %}WORKDIR {{ working_dir }}
RUN git clone --depth 1 {{ repo_url | shquote }} .
{% for step in build_steps %}RUN {{ step }}
{% endfor %}{% for key, value in environment.items() %}ENV {{ key }}={{ value | dquote }}
{% endfor %}ENV PORT={{ port }}
LABEL {{ app_id_label }}={{ app_id | dquote }} {{ app_name_label }}={{ app_name | dquote }}
EXPOSE {{ port }}
CMD {{ command | json }}
"""

SUPPORTED_IMAGES = {
    RuntimeType.DOCKER: [
        'golang:1.24-alpine',
        'node:22-alpine',
        'python:3.13-alpine',
        'rust:1.83-alpine',
        'maven:3.9-eclipse-temurin-21-alpine',
        'ubuntu:22.04',
        'nginx:alpine',
    ],
    RuntimeType.LXC: [
        'ubuntu:22.04',
        'alpine:3.18',
        'debian:bullseye',
    ],
}
# containerd consumes the same OCI images docker does
SUPPORTED_IMAGES[RuntimeType.CONTAINERD] = list(SUPPORTED_IMAGES[RuntimeType.DOCKER])

APK_GIT = 'apk add --no-cache git'


@dataclass
class Template:
    language: str
    base_image: str
    command: List[str]
    port: int = 8080
    working_dir: str = '/app'
    setup_steps: List[str] = field(default_factory=list)
    build_steps: List[str] = field(default_factory=list)
    environment: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    descriptor: str = DESCRIPTOR
    description: str = ''

    def to_dict(self):
        return asdict(self)


@dataclass
class RenderedTemplate:
    language: str
    descriptor: str
    base_image: str
    port: int
    working_dir: str
    command: List[str]
    environment: Dict[str, str]
    labels: Dict[str, str]


def default_templates():
    return [
        Template(
            language='go',
            base_image='golang:1.24-alpine',
            setup_steps=[APK_GIT],
            build_steps=['go mod download || true', 'CGO_ENABLED=0 go build -o /app/server .'],
            command=['/app/server'],
            port=8080,
            environment={'GIN_MODE': 'release'},
            labels={'launchpad.language': 'go'},
            description='Go module built into a single static binary'
        ),
        Template(
            language='javascript',
            base_image='node:22-alpine',
            setup_steps=[APK_GIT],
            build_steps=['npm ci --omit=dev || npm install --omit=dev'],
            command=['npm', 'start'],
            port=3000,
            environment={'NODE_ENV': 'production'},
            labels={'launchpad.language': 'javascript'},
            description='Node.js application started with npm start'
        ),
        Template(
            language='python',
            base_image='python:3.13-alpine',
            setup_steps=[APK_GIT],
            build_steps=['if [ -f requirements.txt ]; then pip install --no-cache-dir -r requirements.txt; '
                         'elif [ -f pyproject.toml ]; then pip install --no-cache-dir .; fi'],
            command=['sh', '-c', 'if [ -f main.py ]; then exec python main.py; else exec python app.py; fi'],
            port=8000,
            environment={'PYTHONUNBUFFERED': '1'},
            labels={'launchpad.language': 'python'},
            description='Python application run from main.py or app.py'
        ),
        Template(
            language='rust',
            base_image='rust:1.83-alpine',
            setup_steps=[APK_GIT + ' musl-dev'],
            build_steps=['cargo build --release'],
            command=['cargo', 'run', '--release'],
            port=8080,
            environment={'RUST_LOG': 'info'},
            labels={'launchpad.language': 'rust'},
            description='Cargo project built in release mode'
        ),
        Template(
            language='java',
            base_image='maven:3.9-eclipse-temurin-21-alpine',
            setup_steps=[APK_GIT],
            build_steps=['mvn -q -DskipTests package'],
            command=['sh', '-c', 'exec java -jar target/*.jar'],
            port=8080,
            labels={'launchpad.language': 'java'},
            description='Maven project packaged as a runnable jar'
        ),
        Template(
            language=GENERIC,
            base_image='ubuntu:22.04',
            setup_steps=['apt-get update && apt-get install -y --no-install-recommends git ca-certificates '
                         '&& rm -rf /var/lib/apt/lists/*'],
            command=['sh', '-c', 'if [ -x ./start.sh ]; then exec ./start.sh; '
                                 'else echo "no start.sh found" && exec sleep infinity; fi'],
            port=8080,
            labels={'launchpad.language': GENERIC},
            description='Fallback for unrecognized languages; runs ./start.sh'
        ),
    ]


def _dquote(value):
    text = str(value).replace('\\', '\\\\').replace('"', '\\"')
    return f'"{text}"'


def supported_images(runtime_type):
    return list(SUPPORTED_IMAGES.get(runtime_type, []))


class TemplateManager:
    """Registry of language templates; unknown languages resolve to generic"""

    def __init__(self, templates=None):
        self._lock = threading.RLock()
        self._templates = {}
        self.env = jinja2.Environment(
            undefined=jinja2.StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False
        )
        self.env.filters['json'] = json.dumps
        self.env.filters['shquote'] = lambda value: shlex.quote(str(value))
        self.env.filters['dquote'] = _dquote
        for template in (templates or default_templates()):
            self.validate(template)
            self._templates[template.language] = template

    @staticmethod
    def normalize(language):
        key = (language or '').strip().lower()
        return ALIASES.get(key, key)

    def has(self, language):
        with self._lock:
            return self.normalize(language) in self._templates

    def get(self, language):
        key = self.normalize(language)
        with self._lock:
            template = self._templates.get(key)
            if template is None:
                logger.info(f"ℹ️ No template for '{language}', using {GENERIC}")
                template = self._templates[GENERIC]
            return deepcopy(template)

    def list_languages(self):
        with self._lock:
            return sorted(self._templates)

    def list_templates(self):
        with self._lock:
            return [self._info(t) for _, t in sorted(self._templates.items())]

    def get_info(self, language):
        key = self.normalize(language)
        with self._lock:
            template = self._templates.get(key)
        if template is None:
            raise NotFoundError(f"Template {language} not found")
        return self._info(template)

    @staticmethod
    def _info(template):
        return {
            'language': template.language,
            'base_image': template.base_image,
            'port': template.port,
            'working_dir': template.working_dir,
            'command': list(template.command),
            'build_steps': list(template.build_steps),
            'environment': dict(template.environment),
            'labels': dict(template.labels),
            'description': template.description,
        }

    def validate(self, template):
        if not template.language or not template.language.strip():
            raise ValidationError("Template language is required")
        if not template.base_image:
            raise ValidationError(f"Template {template.language}: base image is required")
        if not template.command:
            raise ValidationError(f"Template {template.language}: command is required")
        if not template.descriptor or not template.descriptor.strip():
            raise ValidationError(f"Template {template.language}: descriptor body is required")
        if not isinstance(template.port, int) or not 0 < template.port < 65536:
            raise ValidationError(f"Template {template.language}: invalid port {template.port}")
        try:
            self.env.parse(template.descriptor)
        except jinja2.TemplateSyntaxError as e:
            raise ValidationError(f"Template {template.language}: descriptor does not parse: {str(e)}")
        return True

    def add(self, template):
        template.language = self.normalize(template.language)
        self.validate(template)
        with self._lock:
            if template.language in self._templates:
                raise ConflictError(f"Template {template.language} already exists")
            self._templates[template.language] = template
        logger.info(f"➕ Template added: {template.language}")

    def update(self, template):
        template.language = self.normalize(template.language)
        self.validate(template)
        with self._lock:
            if template.language not in self._templates:
                raise NotFoundError(f"Template {template.language} not found")
            self._templates[template.language] = template
        logger.info(f"✏️ Template updated: {template.language}")

    def delete(self, language):
        key = self.normalize(language)
        if key == GENERIC:
            raise ValidationError("The generic template cannot be deleted")
        with self._lock:
            if key not in self._templates:
                raise NotFoundError(f"Template {language} not found")
            del self._templates[key]
        logger.info(f"🗑️ Template deleted: {key}")

    def render(self, language, app_name, app_id, port, repo_url, environment=None, labels=None):
        """Render the descriptor and the merged container configuration"""
        template = self.get(language)

        env = dict(template.environment)
        env.update(environment or {})

        merged_labels = dict(template.labels)
        merged_labels.update(labels or {})
        merged_labels[APP_ID_LABEL] = app_id
        merged_labels[APP_NAME_LABEL] = app_name

        try:
            descriptor = self.env.from_string(template.descriptor).render(
                base_image=template.base_image,
                setup_steps=template.setup_steps,
                build_steps=template.build_steps,
                working_dir=template.working_dir,
                command=template.command,
                environment=env,
                port=port,
                app_id=app_id,
                app_name=app_name,
                repo_url=repo_url,
                app_id_label=APP_ID_LABEL,
                app_name_label=APP_NAME_LABEL
            )
        except jinja2.TemplateError as e:
            raise BuildError(f"Failed to render {template.language} descriptor: {str(e)}")

        return RenderedTemplate(
            language=template.language,
            descriptor=descriptor,
            base_image=template.base_image,
            port=port,
            working_dir=template.working_dir,
            command=list(template.command),
            environment=env,
            labels=merged_labels
        )
