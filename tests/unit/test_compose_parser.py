import logging

import pytest
import yaml

from stackorch.errors import DefinitionError
from stackorch.MODELS.service_definition import (
    DependencyGate,
    PortBinding,
    RestartPolicyCondition,
)
from stackorch.PARSERS.compose_parser import ComposeParser, parse_duration, parse_restart


def test_parse(tmp_path):
    compose_content = {
        'services': {
            'web': {
                'image': 'nginx:latest',
                'ports': ['8080:80', '443', '127.0.0.1:9000:9000/tcp'],
                'environment': {
                    'DEBUG': True,
                    'WORKERS': 4,
                },
                'restart': 'always',
                'depends_on': ['db'],
            },
            'db': {
                'image': 'postgres:13',
                'volumes': ['db_data:/var/lib/postgresql/data', './init:/docker-entrypoint-initdb.d:ro'],
            }
        },
        'volumes': {
            'db_data': {}
        }
    }

    compose_file = tmp_path / "docker-compose.yml"
    with open(compose_file, 'w') as f:
        yaml.dump(compose_content, f)

    parser = ComposeParser(context={})
    config = parser.parse(str(compose_file))

    assert sorted(config.services) == ['db', 'web']
    web = config.services['web']
    assert web.image_name == 'nginx:latest'
    assert web.ports == [
        PortBinding(target=80, published=8080),
        PortBinding(target=443),
        PortBinding(target=9000, published=9000),
    ]
    assert web.environment == {'DEBUG': 'true', 'WORKERS': '4'}
    assert web.restart_policy.condition == RestartPolicyCondition.ALWAYS
    assert [(d.service, d.gate) for d in web.depends_on] == [('db', DependencyGate.STARTED)]

    db = config.services['db']
    assert 'db_data' in config.volumes
    assert db.volumes[0].source == 'db_data'
    assert db.volumes[0].target == '/var/lib/postgresql/data'
    assert db.volumes[0].is_named
    assert db.volumes[1].read_only
    assert not db.volumes[1].is_named
    assert db.named_volumes == ['db_data']
    # Project name comes from the directory holding the file
    assert config.name == tmp_path.name.lower().replace('.', '')


def test_depends_on_conditions():
    config = ComposeParser(context={}).parse_from_string("""
services:
  db:
    image: postgres
    healthcheck:
      test: pg_isready -U app
      interval: 1m30s
      timeout: 500ms
      start_period: 5
  cache:
    image: redis
  web:
    image: web
    depends_on:
      db:
        condition: service_healthy
      cache:
""")
    web = config.services['web']
    assert [(d.service, d.gate) for d in web.depends_on] == [
        ('db', DependencyGate.HEALTHY),
        ('cache', DependencyGate.STARTED),
    ]
    check = config.services['db'].health_check
    assert check.test == ['CMD-SHELL', 'pg_isready -U app']
    assert check.interval == 90
    assert check.timeout == 0.5
    assert check.start_period == 5
    assert check.retries == 3


def test_unsupported_condition():
    with pytest.raises(DefinitionError):
        ComposeParser(context={}).parse_from_string("""
services:
  job:
    image: job
  web:
    image: web
    depends_on:
      job:
        condition: service_completed_successfully
""")


def test_disabled_healthcheck():
    config = ComposeParser(context={}).parse_from_string("""
services:
  web:
    image: web
    healthcheck:
      disable: true
""")
    assert config.services['web'].health_check.disabled
    assert not config.services['web'].has_probe


def test_commands_and_build():
    config = ComposeParser(context={}).parse_from_string("""
services:
  api:
    build:
      context: ./api
      dockerfile: Dockerfile.dev
    entrypoint: python -m
    command: ["http.server", 8000]
    env_file: .env
    working_dir: /srv
    labels:
      - tier=backend
  worker:
    build: ./worker
    command: celery -A "app worker"
""")
    api = config.services['api']
    assert api.build_context == './api'
    assert api.dockerfile_path == 'Dockerfile.dev'
    assert api.full_command() == ['python', '-m', 'http.server', '8000']
    assert api.environment_files == ['.env']
    assert api.labels == {'tier': 'backend'}
    worker = config.services['worker']
    assert worker.build_context == './worker'
    assert worker.cmd == ['celery', '-A', 'app worker']


@pytest.mark.parametrize('value, condition, retries', [
    ('no', RestartPolicyCondition.NEVER, None),
    (False, RestartPolicyCondition.NEVER, None),
    ('never', RestartPolicyCondition.NEVER, None),
    ('always', RestartPolicyCondition.ALWAYS, None),
    ('unless-stopped', RestartPolicyCondition.ALWAYS, None),
    ('on-failure', RestartPolicyCondition.ON_FAILURE, None),
    ('on-failure:5', RestartPolicyCondition.ON_FAILURE, 5),
])
def test_parse_restart(value, condition, retries):
    policy = parse_restart(value)
    assert policy.condition == condition
    assert policy.max_retries == retries


def test_parse_restart_rejects_unknown():
    with pytest.raises(ValueError):
        parse_restart('sometimes')
    with pytest.raises(ValueError):
        parse_restart('on-failure:many')


@pytest.mark.parametrize('value, seconds', [
    (10, 10.0),
    ('10', 10.0),
    ('10s', 10.0),
    ('1m30s', 90.0),
    ('500ms', 0.5),
    ('1h', 3600.0),
    ('1.5s', 1.5),
])
def test_parse_duration(value, seconds):
    assert parse_duration(value) == pytest.approx(seconds)


@pytest.mark.parametrize('value', ['', 'soon', '10x', 's10', '1m 30s'])
def test_parse_duration_rejects(value):
    with pytest.raises(ValueError):
        parse_duration(value)


def test_interpolation(caplog):
    parser = ComposeParser(context={'TAG': '1.2', 'EMPTY': ''})
    with caplog.at_level(logging.WARNING):
        config = parser.parse_from_string("""
services:
  web:
    image: "web:${TAG}"
    environment:
      MODE: "${MODE:-dev}"
      FLAG: "${TAG:+on}"
      OTHER: "${EMPTY:+on}"
      MISSING: "x${UNSET}y"
      PRICE: "$$5"
""")
    web = config.services['web']
    assert web.image_name == 'web:1.2'
    assert web.environment == {'MODE': 'dev', 'FLAG': 'on', 'OTHER': '', 'MISSING': 'xy', 'PRICE': '$5'}
    assert 'UNSET' in caplog.text


def test_environment_list_forms():
    parser = ComposeParser(context={'HOME_DIR': '/home/app'})
    config = parser.parse_from_string("""
services:
  web:
    image: web
    environment:
      - A=1
      - B=x=y
      - HOME_DIR
      - NOT_IN_CONTEXT
""")
    assert config.services['web'].environment == {'A': '1', 'B': 'x=y', 'HOME_DIR': '/home/app'}


def test_duplicate_environment_key():
    with pytest.raises(DefinitionError):
        ComposeParser(context={}).parse_from_string("""
services:
  web:
    image: web
    environment: [A=1, A=2]
""")


def test_undeclared_volume():
    with pytest.raises(DefinitionError, match='undeclared volume data'):
        ComposeParser(context={}).parse_from_string("""
services:
  db:
    image: postgres
    volumes: ["data:/var/lib/data"]
""")


def test_undeclared_network():
    with pytest.raises(DefinitionError, match='undeclared network backend'):
        ComposeParser(context={}).parse_from_string("""
services:
  db:
    image: postgres
    networks: [backend]
""")


def test_networks():
    config = ComposeParser(context={}).parse_from_string("""
services:
  db:
    image: postgres
    networks:
      backend: {}
  web:
    image: web
networks:
  backend:
    driver: bridge
""")
    assert config.services['db'].networks == ['backend']
    assert config.networks['backend'].driver == 'bridge'
    assert config.service_networks('web') == ['default']


@pytest.mark.parametrize('content', [
    'services: [',
    '- just\n- a list\n',
    'services:\n  web: nginx\n',
    'services:\n  web:\n    ports: ["80"]\n',
    'services:\n  web:\n    image: web\n    replicas: -1\n',
    'services:\n  web:\n    image: web\n    volumes: ["/only-target"]\n',
    'services:\n  web:\n    image: web\n    healthcheck:\n      interval: 5s\n',
    'services:\n  web:\n    image: web\n    ports: ["http"]\n',
])
def test_invalid_definitions(content):
    with pytest.raises(DefinitionError):
        ComposeParser(context={}).parse_from_string(content)


def test_empty_file():
    config = ComposeParser(context={}).parse_from_string('', name='empty')
    assert config.services == {}
    assert config.name == 'empty'


def test_load_files_replaces_services(tmp_path):
    base = tmp_path / 'stack.yml'
    base.write_text("""
name: shop
services:
  db:
    image: postgres:13
    environment: {A: "1"}
  web:
    image: web
    depends_on: [db]
""")
    override = tmp_path / 'stack.override.yml'
    override.write_text("""
services:
  db:
    image: postgres:16
    volumes: ["data:/data"]
volumes:
  data:
""")
    config = ComposeParser(context={}).load_files([str(base), str(override)])
    assert config.services['db'].image_name == 'postgres:16'
    assert config.services['db'].environment == {}
    assert config.services['web'].depends_on[0].service == 'db'
    assert 'data' in config.volumes
    assert config.name == 'shop'


def test_missing_file(tmp_path):
    with pytest.raises(DefinitionError):
        ComposeParser(context={}).parse(str(tmp_path / 'nope.yml'))
