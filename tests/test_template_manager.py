import pytest

from errors import ValidationError, ConflictError, NotFoundError
from runtime_types import RuntimeType
from template_manager import (
    TemplateManager, Template, supported_images, APP_ID_LABEL, APP_NAME_LABEL
)


@pytest.fixture
def templates():
    return TemplateManager()


@pytest.mark.parametrize('alias, canonical', [
    ('node', 'javascript'),
    ('NodeJS', 'javascript'),
    ('js', 'javascript'),
    ('py', 'python'),
    ('rs', 'rust'),
    ('golang', 'go'),
    ('java', 'java'),
])
def test_aliases_resolve_to_canonical_templates(templates, alias, canonical):
    assert templates.get(alias).language == canonical


def test_unknown_language_falls_back_to_generic(templates):
    assert templates.get('cobol').language == 'generic'
    assert templates.get(None).language == 'generic'


def test_supported_languages(templates):
    assert templates.list_languages() == ['generic', 'go', 'java', 'javascript', 'python', 'rust']


def test_render_substitutes_request_parameters(templates):
    rendered = templates.render('py', app_name='shop', app_id='app_1_2', port=4321,
                                repo_url='https://example.com/shop.git')

    assert rendered.language == 'python'
    assert rendered.descriptor.startswith('FROM python:3.13-alpine\n')
    assert "git clone --depth 1 https://example.com/shop.git ." in rendered.descriptor
    assert 'EXPOSE 4321' in rendered.descriptor
    assert 'ENV PORT=4321' in rendered.descriptor
    assert 'CMD ["sh", "-c"' in rendered.descriptor
    assert rendered.port == 4321


def test_caller_environment_overrides_template_defaults(templates):
    rendered = templates.render('python', 'shop', 'app_1_2', 8000, 'https://example.com/shop.git',
                                environment={'PYTHONUNBUFFERED': '0', 'GREETING': 'say "hi"'})

    assert rendered.environment['PYTHONUNBUFFERED'] == '0'
    assert rendered.environment['GREETING'] == 'say "hi"'
    assert 'ENV GREETING="say \\"hi\\""' in rendered.descriptor


def test_app_labels_are_injected_last(templates):
    rendered = templates.render('go', 'shop', 'app_1_2', 8080, 'https://example.com/shop.git',
                                labels={APP_ID_LABEL: 'spoofed', 'team': 'core', 'launchpad.language': 'x'})

    assert rendered.labels[APP_ID_LABEL] == 'app_1_2'
    assert rendered.labels[APP_NAME_LABEL] == 'shop'
    assert rendered.labels['team'] == 'core'
    assert rendered.labels['launchpad.language'] == 'x'


def test_repo_url_is_shell_quoted(templates):
    rendered = templates.render('go', 'x', 'app_1_2', 8080, 'https://example.com/a b.git')
    assert "git clone --depth 1 'https://example.com/a b.git' ." in rendered.descriptor


def test_get_returns_a_copy(templates):
    templates.get('go').environment['MUTATED'] = '1'
    assert 'MUTATED' not in templates.get('go').environment


def test_add_update_delete_cycle(templates):
    template = Template(language='Elixir', base_image='elixir:1.17-alpine', command=['mix', 'run', '--no-halt'])
    templates.add(template)
    assert templates.has('elixir')
    assert templates.get_info('elixir')['base_image'] == 'elixir:1.17-alpine'

    with pytest.raises(ConflictError):
        templates.add(Template(language='elixir', base_image='x', command=['x']))

    templates.update(Template(language='elixir', base_image='elixir:1.18-alpine', command=['mix', 'run']))
    assert templates.get('elixir').base_image == 'elixir:1.18-alpine'

    templates.delete('elixir')
    assert not templates.has('elixir')
    with pytest.raises(NotFoundError):
        templates.delete('elixir')


def test_generic_cannot_be_deleted(templates):
    with pytest.raises(ValidationError):
        templates.delete('generic')


def test_update_requires_existing_template(templates):
    with pytest.raises(NotFoundError):
        templates.update(Template(language='haskell', base_image='haskell:9', command=['stack', 'run']))


@pytest.mark.parametrize('template', [
    Template(language='bad', base_image='', command=['x']),
    Template(language='bad', base_image='x', command=[]),
    Template(language='bad', base_image='x', command=['x'], descriptor=''),
    Template(language='bad', base_image='x', command=['x'], descriptor='FROM {{ base_image'),
    Template(language='bad', base_image='x', command=['x'], port=70000),
])
def test_validate_rejects_incomplete_templates(templates, template):
    with pytest.raises(ValidationError):
        templates.validate(template)


def test_supported_images_per_runtime():
    assert 'node:22-alpine' in supported_images(RuntimeType.DOCKER)
    assert supported_images(RuntimeType.LXC) == ['ubuntu:22.04', 'alpine:3.18', 'debian:bullseye']
