from datetime import datetime

import pytest

from stackdeploy.artifacts import (
    escape_systemd_value,
    load_template,
    parse_env,
    render_credentials,
    render_dropin,
    render_env_file,
    runtime_environment,
    set_env_value,
)
from stackdeploy.config import DeployOptions, StackConfig, StackPaths
from stackdeploy.errors import ValidationError
from stackdeploy.state import DeploymentState, FieldSource


@pytest.fixture
def config(tmp_path) -> StackConfig:
    state = DeploymentState()
    values = {
        "POSTGRES_APP_USER": "sub2api",
        "POSTGRES_APP_DB": "sub2api",
        "POSTGRES_APP_PASSWORD": "p" * 64,
        "REDIS_APP_PASSWORD": "r" * 64,
        "JWT_SECRET": "j" * 64,
        "ADMIN_EMAIL": "admin@sub2api.local",
        "ADMIN_PASSWORD": 'pa%ss"wo\\rd',
        "SERVER_HOST": "0.0.0.0",
        "SERVER_PORT": "8080",
    }
    for key, value in values.items():
        state.set(key, value, FieldSource.GENERATED)
    return StackConfig(options=DeployOptions(paths=StackPaths.under(tmp_path)), state=state)


@pytest.mark.parametrize("value", ["a&b", "x/y/z", "back\\slash", "a=b", "$HOME"])
def test_set_env_value_is_literal(value):
    text = set_env_value("FOO=old\nBAR=1\n", "FOO", value)
    assert parse_env(text)["FOO"] == value
    assert parse_env(text)["BAR"] == "1"


def test_set_env_value_exact_key_match():
    text = set_env_value("FOO_BAR=1\nFOO=2\n", "FOO", "3")
    assert text == "FOO_BAR=1\nFOO=3\n"


def test_set_env_value_appends():
    assert set_env_value("A=1", "B", "2") == "A=1\nB=2\n"


def test_set_env_value_rejects_newline():
    with pytest.raises(ValidationError):
        set_env_value("", "A", "x\ny")


def test_env_file_from_template(config):
    env = runtime_environment(config)
    text = render_env_file(env)

    assert "change_me" not in text
    assert text.startswith("# ====")
    values = parse_env(text)
    for key, value in env.items():
        assert values[key] == value
    assert values["TZ"] == "UTC"
    assert "DATABASE_PASSWORD" in load_template()


def test_escape_systemd_value():
    assert escape_systemd_value('abc"def\\ghi') == 'abc\\"def\\\\ghi'
    assert escape_systemd_value("100%") == "100%%"


def test_dropin(config):
    dropin = render_dropin(runtime_environment(config))
    lines = dropin.splitlines()

    assert lines[0] == "[Service]"
    assert 'Environment="AUTO_SETUP=true"' in lines
    assert 'Environment="ADMIN_PASSWORD=pa%%ss\\"wo\\\\rd"' in lines
    assert f'Environment="REDIS_PASSWORD={"r" * 64}"' in lines


def test_credentials_report(config):
    text = render_credentials(config, generated_at=datetime(2026, 1, 2, 3, 4, 5))

    assert "Generated at: 2026-01-02T03:04:05Z" in text
    assert "SERVICE_URL=http://127.0.0.1:8080" in text
    assert f"POSTGRES_PASSWORD={'p' * 64}" in text
    assert f"REDIS_PASSWORD={'r' * 64}" in text
    assert f"JWT_SECRET={'j' * 64}" in text
    assert f"STATE_FILE={config.paths.state_file}" in text
