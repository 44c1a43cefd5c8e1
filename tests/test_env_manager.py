import pytest

from env_manager import normalize_items, validate_key, validate_value, MAX_VARS_PER_APP
from errors import ValidationError, ConflictError, NotFoundError, SecretError
from secrets_manager import SecretBox, MASK, looks_secret


@pytest.fixture
def app_id(db):
    db.create_app({'id': 'app_1_1', 'name': 'a', 'repo_url': 'https://example.com/a.git',
                   'port': 3001, 'status': 'idle'})
    return 'app_1_1'


def test_secret_box_round_trip_and_key_binding():
    box = SecretBox('passphrase')
    token = box.encrypt('s3cr3t')
    assert token != 's3cr3t'
    assert box.decrypt(token) == 's3cr3t'

    with pytest.raises(SecretError):
        SecretBox('other passphrase').decrypt(token)
    with pytest.raises(SecretError):
        box.decrypt('not-a-token')


def test_secret_box_requires_passphrase():
    with pytest.raises(SecretError):
        SecretBox('')


@pytest.mark.parametrize('key, value, expected', [
    ('DB_PASSWORD', 'x', True),
    ('GITHUB_TOKEN', 'x', True),
    ('STRIPE_API_KEY', 'x', True),
    ('GREETING', 'hello', False),
    ('LOG_LEVEL', 'debug', False),
])
def test_secret_heuristic(key, value, expected):
    assert looks_secret(key, value) is expected


@pytest.mark.parametrize('key', ['', '1ABC', 'WITH-DASH', 'A' * 101, 'PATH', 'port', 'LAUNCHPAD_APP_ID'])
def test_invalid_keys(key):
    with pytest.raises(ValidationError):
        validate_key(key)


@pytest.mark.parametrize('value', ['', None, 'x' * 1001, 'a\nb', 'a\x00b', 5])
def test_invalid_values(value):
    with pytest.raises(ValidationError):
        validate_value(value)


def test_normalize_items_accepts_both_spellings():
    items = normalize_items([
        {'name': 'GREETING', 'value': 'hi'},
        {'key': 'DB_PASSWORD', 'value': 'p'},
        {'key': 'PLAIN_TOKEN', 'value': 't', 'is_secret': False},
        {'key': 'FLAGGED', 'value': 'v', 'secret': True},
    ])
    assert items == [
        {'key': 'GREETING', 'value': 'hi', 'is_secret': False},
        {'key': 'DB_PASSWORD', 'value': 'p', 'is_secret': True},
        {'key': 'PLAIN_TOKEN', 'value': 't', 'is_secret': False},
        {'key': 'FLAGGED', 'value': 'v', 'is_secret': True},
    ]


def test_normalize_items_rejects_bad_input():
    with pytest.raises(ValidationError):
        normalize_items({'key': 'A'})
    with pytest.raises(ValidationError):
        normalize_items([{'key': 'A', 'value': '1'}, {'key': 'A', 'value': '2'}])
    with pytest.raises(ValidationError):
        normalize_items([{'key': f"K{n}", 'value': 'v'} for n in range(MAX_VARS_PER_APP + 1)])
    assert normalize_items(None) == []


def test_secrets_are_masked_on_every_read_path(env_vars, db, app_id):
    created = env_vars.create(app_id, 'DB_PASSWORD', 's3cr3t', is_secret=True)
    assert created['value'] == MASK

    assert env_vars.get(app_id, 'DB_PASSWORD')['value'] == MASK
    assert env_vars.list(app_id)[0]['value'] == MASK
    assert db.get_env_var(app_id, 'DB_PASSWORD')['value'] not in ('s3cr3t', MASK)
    assert env_vars.resolve(app_id) == {'DB_PASSWORD': 's3cr3t'}
    assert env_vars.plain(app_id) == {}


def test_plain_values_are_returned_as_is(env_vars, app_id):
    env_vars.create(app_id, 'GREETING', 'hello')
    assert env_vars.get(app_id, 'GREETING')['value'] == 'hello'
    assert env_vars.plain(app_id) == {'GREETING': 'hello'}


def test_create_conflict_and_missing_app(env_vars, app_id):
    env_vars.create(app_id, 'GREETING', 'hello')
    with pytest.raises(ConflictError):
        env_vars.create(app_id, 'GREETING', 'again')
    with pytest.raises(NotFoundError):
        env_vars.create('app_missing', 'GREETING', 'hello')


def test_create_enforces_per_app_limit(env_vars, app_id):
    for n in range(MAX_VARS_PER_APP):
        env_vars.create(app_id, f"VAR_{n}", 'v', is_secret=False)
    with pytest.raises(ValidationError):
        env_vars.create(app_id, 'ONE_TOO_MANY', 'v')


def test_update_keeps_secret_flag_unless_told(env_vars, app_id):
    env_vars.create(app_id, 'API_TOKEN', 'old', is_secret=True)

    updated = env_vars.update(app_id, 'API_TOKEN', 'new')
    assert updated['is_secret'] is True
    assert env_vars.resolve(app_id)['API_TOKEN'] == 'new'

    updated = env_vars.update(app_id, 'API_TOKEN', 'visible', is_secret=False)
    assert updated['value'] == 'visible'

    with pytest.raises(NotFoundError):
        env_vars.update(app_id, 'MISSING', 'x')


def test_delete(env_vars, app_id):
    env_vars.create(app_id, 'GREETING', 'hello')
    env_vars.delete(app_id, 'GREETING')
    assert env_vars.list(app_id) == []
    with pytest.raises(NotFoundError):
        env_vars.delete(app_id, 'GREETING')


def test_replace_encrypts_secret_items(env_vars, db, app_id):
    env_vars.replace(app_id, normalize_items([
        {'key': 'DB_PASSWORD', 'value': 'p'},
        {'key': 'GREETING', 'value': 'hi'},
    ]))
    assert db.get_env_var(app_id, 'DB_PASSWORD')['value'] != 'p'
    assert env_vars.resolve(app_id) == {'DB_PASSWORD': 'p', 'GREETING': 'hi'}
