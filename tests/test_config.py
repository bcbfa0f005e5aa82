from pathlib import Path

import pytest

from stackdeploy.config import (
    DeploymentMode,
    DeployOptions,
    HealthStrategy,
    ServiceDescriptor,
    StackPaths,
    default_services,
    dependency_order,
    health_host,
    resolve_config,
    validate_port,
)
from stackdeploy.errors import ValidationError
from stackdeploy.state import DeploymentState, FieldSource, StateStore


@pytest.mark.parametrize("port", [1, 8080, 65535, "443"])
def test_valid_ports(port):
    assert validate_port(port) == int(port)


@pytest.mark.parametrize("port", [0, 65536, -1, "abc", "", True])
def test_invalid_ports(port):
    with pytest.raises(ValidationError) as exc:
        validate_port(port)
    assert exc.value.exit_code == 2


def test_options_validate_coerces_mode():
    options = DeployOptions(mode="infra", server_port="9000")
    options.validate()
    assert options.mode == DeploymentMode.INFRA
    assert options.server_port == 9000


def test_options_validate_rejects_unknown_mode():
    with pytest.raises(ValidationError):
        DeployOptions(mode="partial").validate()


def test_options_validate_rejects_multiline_password():
    with pytest.raises(ValidationError):
        DeployOptions(admin_password="a\nb").validate()


def test_options_validate_rejects_missing_install_script(tmp_path: Path):
    with pytest.raises(ValidationError, match="Install script not found"):
        DeployOptions(install_script=tmp_path / "missing.sh").validate()


def test_paths_under_root(tmp_path: Path):
    paths = StackPaths.under(tmp_path)
    assert paths.state_file == tmp_path / "etc/sub2api/.one-click-deploy.env"
    assert paths.redis_conf_candidates[0] == tmp_path / "etc/redis/redis.conf"
    assert paths.binary == tmp_path / "opt/sub2api/sub2api"


@pytest.mark.parametrize(
    "host,expected",
    [
        ("0.0.0.0", "127.0.0.1"),
        ("::", "127.0.0.1"),
        ("10.0.0.5", "10.0.0.5"),
        ("fd00::1", "[fd00::1]"),
        ("api.example.com", "api.example.com"),
    ],
)
def test_health_host(host, expected):
    assert health_host(host) == expected


def test_default_services_order():
    services = default_services("http://127.0.0.1:8080/health")
    names = [s.name for s in dependency_order(services)]
    assert names == ["postgresql", "redis-server", "sub2api", "sub2api-endpoint"]
    endpoint = services["sub2api-endpoint"]
    assert endpoint.strategy == HealthStrategy.HTTP_ENDPOINT
    assert endpoint.timeout == 120.0
    assert services["sub2api"].timeout == 240.0


def test_dependency_order_detects_cycle():
    services = {
        "a": ServiceDescriptor(name="a", unit="a", prerequisites=("b",)),
        "b": ServiceDescriptor(name="b", unit="b", prerequisites=("a",)),
    }
    with pytest.raises(ValidationError):
        dependency_order(services)


def test_dependency_order_unknown_prerequisite():
    services = {"a": ServiceDescriptor(name="a", unit="a", prerequisites=("missing",))}
    with pytest.raises(ValidationError):
        dependency_order(services)


def persisted(paths: StackPaths, **values) -> StateStore:
    state = DeploymentState()
    for key, value in values.items():
        state.set(key, value, FieldSource.REUSED)
    store = StateStore(paths.state_file)
    store.save(state)
    return store


def test_resolve_defaults_on_first_run(tmp_path: Path):
    paths = StackPaths.under(tmp_path)
    config = resolve_config(DeployOptions(paths=paths), StateStore(paths.state_file))

    state = config.state
    assert state.server_host == "0.0.0.0"
    assert state.server_port == 8080
    assert state.admin_email == "admin@sub2api.local"
    assert state.source("SERVER_PORT") == FieldSource.DEFAULT
    assert state.jwt_secret == ""
    assert config.previous_state is None
    assert config.mode == DeploymentMode.FULL


def test_resolve_prefers_state_over_defaults_and_cli_over_state(tmp_path: Path):
    paths = StackPaths.under(tmp_path)
    store = persisted(paths, SERVER_PORT="9000", JWT_SECRET="a" * 64, ADMIN_EMAIL="ops@example.com")

    config = resolve_config(
        DeployOptions(paths=paths, admin_email="root@example.com"), store
    )

    assert config.state.server_port == 9000
    assert config.state.source("SERVER_PORT") == FieldSource.REUSED
    assert config.state.jwt_secret == "a" * 64
    assert config.state.admin_email == "root@example.com"
    assert config.state.source("ADMIN_EMAIL") == FieldSource.OVERRIDDEN


def test_resolve_force_ignores_state(tmp_path: Path):
    paths = StackPaths.under(tmp_path)
    store = persisted(paths, SERVER_PORT="9000", JWT_SECRET="a" * 64)

    config = resolve_config(DeployOptions(paths=paths, force=True), store)

    assert config.state.server_port == 8080
    assert config.state.jwt_secret == ""


def test_resolve_config_file_between_state_and_cli(tmp_path: Path):
    paths = StackPaths.under(tmp_path)
    store = persisted(paths, SERVER_PORT="9000", SERVER_HOST="10.0.0.1")
    config_file = tmp_path / "deploy.yaml"
    config_file.write_text("mode: infra\nserver_port: 9100\nserver_host: 10.0.0.2\nbogus: 1\n")

    config = resolve_config(
        DeployOptions(paths=paths, config_file=config_file, server_host="10.0.0.3"),
        store,
    )

    assert config.mode == DeploymentMode.INFRA
    assert config.state.server_port == 9100
    assert config.state.server_host == "10.0.0.3"


def test_resolve_rejects_bad_port_in_config_file(tmp_path: Path):
    paths = StackPaths.under(tmp_path)
    config_file = tmp_path / "deploy.yaml"
    config_file.write_text("server_port: 0\n")

    with pytest.raises(ValidationError):
        resolve_config(
            DeployOptions(paths=paths, config_file=config_file),
            StateStore(paths.state_file),
        )


def test_resolve_rejects_corrupt_persisted_port(tmp_path: Path):
    paths = StackPaths.under(tmp_path)
    store = persisted(paths, SERVER_PORT="99999")

    with pytest.raises(ValidationError):
        resolve_config(DeployOptions(paths=paths), store)


def test_missing_config_file(tmp_path: Path):
    options = DeployOptions(config_file=tmp_path / "nope.yaml")
    with pytest.raises(ValidationError):
        options.merged_with_file()
