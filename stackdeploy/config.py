"""
Configuration management for the API Stack Deployer.

Handles:
- Caller options (CLI flags and the optional YAML config file)
- Managed host paths
- Service descriptors and their dependency order
- Resolving defaults, persisted state and overrides into one configuration
"""

import logging
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .errors import ValidationError
from .state import (
    SECRET_FIELDS,
    DeploymentState,
    FieldSource,
    StateStore,
)

logger = logging.getLogger(__name__)


SERVICE_NAME = "sub2api"
POSTGRES_UNIT = "postgresql"
REDIS_UNIT = "redis-server"

DEFAULT_SERVER_HOST = "0.0.0.0"
DEFAULT_SERVER_PORT = 8080
DEFAULT_ADMIN_EMAIL = "admin@sub2api.local"
DEFAULT_DB_USER = "sub2api"
DEFAULT_DB_NAME = "sub2api"

DATABASE_HOST = "127.0.0.1"
DATABASE_PORT = 5432
REDIS_HOST = "127.0.0.1"
REDIS_PORT = 6379

GITHUB_REPO = "Wei-Shaw/sub2api"


class DeploymentMode(Enum):
    """Which part of the stack a run provisions."""
    FULL = "full"      # dependent services plus the API server
    INFRA = "infra"    # PostgreSQL and Redis only


class HealthStrategy(Enum):
    """How readiness of a service is observed."""
    PROCESS_STATUS = "process-status"
    HTTP_ENDPOINT = "http-endpoint"


@dataclass(frozen=True)
class ServiceDescriptor:
    """Static description of a service the deployer waits on."""
    name: str
    unit: str
    prerequisites: Tuple[str, ...] = ()
    strategy: HealthStrategy = HealthStrategy.PROCESS_STATUS
    timeout: float = 180.0
    interval: float = 2.0
    endpoint: Optional[str] = None


@dataclass
class StackPaths:
    """Every host path the deployer reads or writes."""
    config_dir: Path = Path("/etc/sub2api")
    state_file: Path = Path("/etc/sub2api/.one-click-deploy.env")
    credentials_file: Path = Path("/etc/sub2api/.install-credentials")
    lock_file: Path = Path("/etc/sub2api/.one-click-deploy.lock")
    install_dir: Path = Path("/opt/sub2api")
    env_file: Path = Path("/opt/sub2api/.env")
    service_file: Path = Path("/etc/systemd/system/sub2api.service")
    dropin_dir: Path = Path("/etc/systemd/system/sub2api.service.d")
    dropin_file: Path = Path("/etc/systemd/system/sub2api.service.d/10-autosetup.conf")
    redis_conf_candidates: Tuple[Path, ...] = (
        Path("/etc/redis/redis.conf"),
        Path("/etc/redis/redis-server.conf"),
    )
    os_release: Path = Path("/etc/os-release")

    @property
    def binary(self) -> Path:
        return self.install_dir / SERVICE_NAME

    @classmethod
    def under(cls, root: Path) -> "StackPaths":
        """Re-root every default path below root."""
        root = Path(root)
        defaults = cls()
        rerooted: Dict[str, Any] = {}
        for f in fields(cls):
            value = getattr(defaults, f.name)
            if isinstance(value, tuple):
                rerooted[f.name] = tuple(root / p.relative_to("/") for p in value)
            else:
                rerooted[f.name] = root / value.relative_to("/")
        return cls(**rerooted)


def validate_port(value: Any) -> int:
    """Return value as a TCP port, raising ValidationError outside 1-65535."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid port: {value!r}")
    try:
        port = int(str(value).strip())
    except ValueError:
        raise ValidationError(f"Invalid port: {value!r}")
    if port < 1 or port > 65535:
        raise ValidationError("--server-port must be between 1 and 65535.")
    return port


@dataclass
class DeployOptions:
    """Caller intent for a single run. None means 'not specified'."""

    mode: Optional[DeploymentMode] = None
    version: Optional[str] = None
    server_host: Optional[str] = None
    server_port: Optional[int] = None
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None
    database_user: Optional[str] = None
    database_name: Optional[str] = None
    force: bool = False
    skip_upgrade_system: bool = False
    dry_run: bool = False
    non_interactive: bool = False
    config_file: Optional[Path] = None
    install_script: Optional[Path] = None
    paths: StackPaths = field(default_factory=StackPaths)

    OVERRIDABLE = (
        "mode",
        "version",
        "server_host",
        "server_port",
        "admin_email",
        "admin_password",
        "database_user",
        "database_name",
    )

    @property
    def effective_mode(self) -> DeploymentMode:
        return self.mode or DeploymentMode.FULL

    def validate(self) -> None:
        """Reject invalid input before anything on the host is touched."""
        if self.mode is not None and not isinstance(self.mode, DeploymentMode):
            try:
                self.mode = DeploymentMode(self.mode)
            except ValueError:
                raise ValidationError(
                    f"Invalid mode: {self.mode} (expected: full or infra)"
                )
        if self.server_port is not None:
            self.server_port = validate_port(self.server_port)
        for name in ("server_host", "admin_email", "database_user", "database_name"):
            value = getattr(self, name)
            if value is not None and not str(value).strip():
                raise ValidationError(f"{name.replace('_', '-')} must not be empty")
        for name in ("admin_password", "admin_email", "server_host"):
            value = getattr(self, name)
            if value is not None and ("\n" in value or "\r" in value):
                raise ValidationError(f"{name.replace('_', '-')} must be a single line")
        if self.install_script is not None and not Path(self.install_script).is_file():
            raise ValidationError(f"Install script not found: {self.install_script}")

    def merged_with_file(self) -> "DeployOptions":
        """Fill unspecified options from the YAML config file, if any."""
        if self.config_file is None:
            return self
        data = load_config_file(self.config_file)
        updates = {}
        for key in self.OVERRIDABLE:
            if getattr(self, key) is None and data.get(key) is not None:
                value = data[key]
                if key == "mode":
                    value = DeploymentMode(value) if value in ("full", "infra") else value
                elif key != "server_port":
                    value = str(value)
                updates[key] = value
        return replace(self, **updates)


def load_config_file(path: Path) -> Dict[str, Any]:
    """Load overrides from a YAML file."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ValidationError(f"Config file not found: {path}")
    except yaml.YAMLError as e:
        raise ValidationError(f"Config file {path} is not valid YAML: {e}")
    if not isinstance(data, dict):
        raise ValidationError(f"Config file {path} must contain a mapping")
    unknown = sorted(set(data) - set(DeployOptions.OVERRIDABLE))
    if unknown:
        logger.warning(f"Ignoring unknown keys in {path}: {', '.join(unknown)}")
    return data


def health_host(host: str) -> str:
    """Address to probe for a service bound to host."""
    if host in ("0.0.0.0", "::", ""):
        return "127.0.0.1"
    if ":" in host and not host.startswith("["):
        return f"[{host}]"
    return host


@dataclass
class StackConfig:
    """Effective configuration for one run, passed through every stage."""

    options: DeployOptions
    state: DeploymentState
    previous_state: Optional[DeploymentState] = None

    @property
    def paths(self) -> StackPaths:
        return self.options.paths

    @property
    def mode(self) -> DeploymentMode:
        return self.options.effective_mode

    @property
    def dry_run(self) -> bool:
        return self.options.dry_run

    @property
    def endpoint_url(self) -> str:
        return f"http://{health_host(self.state.server_host)}:{self.state.server_port}/health"

    @property
    def display_url(self) -> str:
        return f"http://{health_host(self.state.server_host)}:{self.state.server_port}"

    @property
    def services(self) -> Dict[str, ServiceDescriptor]:
        return default_services(self.endpoint_url)

    def dependent_services(self) -> List[ServiceDescriptor]:
        """Dependent services in the order they must be brought up."""
        primary = {SERVICE_NAME, f"{SERVICE_NAME}-endpoint"}
        return [s for s in dependency_order(self.services) if s.name not in primary]


def default_services(endpoint_url: str) -> Dict[str, ServiceDescriptor]:
    services = [
        ServiceDescriptor(name=POSTGRES_UNIT, unit=POSTGRES_UNIT),
        ServiceDescriptor(name=REDIS_UNIT, unit=REDIS_UNIT),
        ServiceDescriptor(
            name=SERVICE_NAME,
            unit=SERVICE_NAME,
            prerequisites=(POSTGRES_UNIT, REDIS_UNIT),
            timeout=240.0,
        ),
        ServiceDescriptor(
            name=f"{SERVICE_NAME}-endpoint",
            unit=SERVICE_NAME,
            prerequisites=(SERVICE_NAME,),
            strategy=HealthStrategy.HTTP_ENDPOINT,
            timeout=120.0,
            endpoint=endpoint_url,
        ),
    ]
    return {s.name: s for s in services}


def dependency_order(services: Dict[str, ServiceDescriptor]) -> List[ServiceDescriptor]:
    """Order services so every prerequisite comes first, keeping declaration order otherwise."""
    ordered: List[ServiceDescriptor] = []
    placed = set()
    pending = list(services.values())
    while pending:
        progressed = False
        for svc in list(pending):
            for dep in svc.prerequisites:
                if dep not in services:
                    raise ValidationError(
                        f"Service {svc.name} depends on unknown service {dep}"
                    )
            if all(dep in placed for dep in svc.prerequisites):
                ordered.append(svc)
                placed.add(svc.name)
                pending.remove(svc)
                progressed = True
        if not progressed:
            names = ", ".join(s.name for s in pending)
            raise ValidationError(f"Dependency cycle between services: {names}")
    return ordered


def resolve_config(options: DeployOptions, store: StateStore) -> StackConfig:
    """
    Merge built-in defaults, persisted state and caller overrides.

    Precedence, lowest first: defaults, persisted state (ignored when
    forcing regeneration), YAML config file, CLI flags. Secrets that are
    neither persisted nor overridden are left empty for the provisioner.
    """
    options = options.merged_with_file()
    options.validate()

    state = DeploymentState()
    defaults = {
        "POSTGRES_APP_USER": DEFAULT_DB_USER,
        "POSTGRES_APP_DB": DEFAULT_DB_NAME,
        "ADMIN_EMAIL": DEFAULT_ADMIN_EMAIL,
        "SERVER_HOST": DEFAULT_SERVER_HOST,
        "SERVER_PORT": str(DEFAULT_SERVER_PORT),
    }
    for key, value in defaults.items():
        state.set(key, value, FieldSource.DEFAULT)

    previous = None
    if options.force:
        logger.info("Forced regeneration requested; ignoring persisted deployment state")
    else:
        previous = store.load()
        if previous is not None:
            for key, value in previous.values.items():
                if value:
                    state.set(key, value, FieldSource.REUSED)

    overrides = {
        "POSTGRES_APP_USER": options.database_user,
        "POSTGRES_APP_DB": options.database_name,
        "ADMIN_EMAIL": options.admin_email,
        "ADMIN_PASSWORD": options.admin_password,
        "SERVER_HOST": options.server_host,
        "SERVER_PORT": str(options.server_port) if options.server_port is not None else None,
    }
    for key, value in overrides.items():
        if value is not None:
            state.set(key, value, FieldSource.OVERRIDDEN)

    state.set(
        "SERVER_PORT",
        str(validate_port(state.get("SERVER_PORT"))),
        state.source("SERVER_PORT") or FieldSource.DEFAULT,
    )

    unresolved = [k for k in state.missing() if k not in SECRET_FIELDS]
    if unresolved:
        raise ValidationError(f"Missing required settings: {', '.join(unresolved)}")

    return StackConfig(options=options, state=state, previous_state=previous)
