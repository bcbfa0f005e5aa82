"""
Core deployment orchestration for the API stack.

Handles:
- The ordered provisioning pipeline as an explicit stage machine
- Secret provisioning and state persistence
- Dependent service configuration and credential synchronization
- Installing, (re)starting and verifying the API server
- Writing the credential report
"""

import contextlib
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, ContextManager, Dict, List, Optional

from .artifacts import (
    render_credentials,
    render_dropin,
    render_env_file,
    runtime_environment,
)
from .config import (
    POSTGRES_UNIT,
    REDIS_HOST,
    REDIS_PORT,
    REDIS_UNIT,
    SERVICE_NAME,
    DeploymentMode,
    DeployOptions,
    ServiceDescriptor,
    StackConfig,
    resolve_config,
)
from .configurator import ConfigMutation, MutationResult, ServiceConfigurator
from .errors import CommandError, CredentialSyncError, DeploymentError
from .files import atomic_write, exclusive_lock
from .health import HealthProber
from .install import HostInstaller
from .services import CommandRunner, ServiceManager
from .state import (
    SECRET_FIELDS,
    FieldSource,
    SecretPolicy,
    SecretProvisioner,
    StateStore,
)

logger = logging.getLogger(__name__)


class Stage(Enum):
    """Provisioning stages, in execution order."""
    RESOLVE_CONFIG = "resolve-config"
    PREFLIGHT = "preflight"
    PROVISION_SECRETS = "provision-secrets"
    PERSIST_STATE = "persist-state"
    CONFIGURE_DEPENDENT_SERVICES = "configure-dependent-services"
    SYNCHRONIZE_CREDENTIALS = "synchronize-credentials"
    INSTALL_PRIMARY = "install-primary"
    START_PRIMARY = "start-primary"
    WAIT_PRIMARY_HEALTHY = "wait-primary-healthy"
    ENDPOINT_READINESS = "endpoint-readiness"
    EMIT_CREDENTIALS = "emit-credentials"


PIPELINE = list(Stage)

PRIMARY_STAGES = {
    Stage.INSTALL_PRIMARY,
    Stage.START_PRIMARY,
    Stage.WAIT_PRIMARY_HEALTHY,
    Stage.ENDPOINT_READINESS,
}

ENDPOINT_SERVICE = f"{SERVICE_NAME}-endpoint"


@dataclass
class DeploymentContext:
    """Everything a run accumulates, handed to each stage in turn."""
    options: DeployOptions
    config: Optional[StackConfig] = None
    current: Optional[Stage] = None
    completed: List[Stage] = field(default_factory=list)
    mutations: List[MutationResult] = field(default_factory=list)
    binary_installed: bool = False


@dataclass
class DeploymentResult:
    """Result of a deployment run."""
    success: bool
    message: str
    stage: Optional[Stage] = None
    exit_code: int = 0
    manual_intervention: bool = False
    services_started: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    diagnostics: List[str] = field(default_factory=list)
    config: Optional[StackConfig] = None
    duration_seconds: float = 0.0


class StackDeployer:
    """
    Deployment orchestrator for the API stack.

    Drives the host through the stages in PIPELINE, strictly in order.
    Each stage is fatal on failure; re-running converges on the same end
    state and reuses every persisted secret unless forced to rotate.
    """

    def __init__(
        self,
        options: DeployOptions,
        service_manager: Optional[ServiceManager] = None,
        prober: Optional[HealthProber] = None,
        configurator: Optional[ServiceConfigurator] = None,
        installer: Optional[HostInstaller] = None,
        store: Optional[StateStore] = None,
        provisioner: Optional[SecretProvisioner] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.options = options
        runner = CommandRunner(dry_run=options.dry_run)
        self.service_manager = service_manager or ServiceManager(runner)
        self.prober = prober or HealthProber(self.service_manager)
        self.configurator = configurator or ServiceConfigurator(dry_run=options.dry_run)
        self.installer = installer or HostInstaller(
            options.paths, runner, install_script=options.install_script
        )
        self.store = store or StateStore(options.paths.state_file, dry_run=options.dry_run)
        self.provisioner = provisioner or SecretProvisioner()
        self.now = now
        self.context = DeploymentContext(options=options)

        self._handlers: Dict[Stage, Callable[[DeploymentContext], None]] = {
            Stage.RESOLVE_CONFIG: self._resolve_config,
            Stage.PREFLIGHT: self._preflight,
            Stage.PROVISION_SECRETS: self._provision_secrets,
            Stage.PERSIST_STATE: self._persist_state,
            Stage.CONFIGURE_DEPENDENT_SERVICES: self._configure_dependent_services,
            Stage.SYNCHRONIZE_CREDENTIALS: self._synchronize_credentials,
            Stage.INSTALL_PRIMARY: self._install_primary,
            Stage.START_PRIMARY: self._start_primary,
            Stage.WAIT_PRIMARY_HEALTHY: self._wait_primary_healthy,
            Stage.ENDPOINT_READINESS: self._endpoint_readiness,
            Stage.EMIT_CREDENTIALS: self._emit_credentials,
        }
        self._service_hooks: Dict[str, Callable[[ServiceDescriptor], None]] = {
            REDIS_UNIT: self._configure_redis,
        }

    @property
    def config(self) -> StackConfig:
        if self.context.config is None:
            raise RuntimeError("Configuration has not been resolved yet")
        return self.context.config

    def should_skip(self, stage: Stage) -> bool:
        config = self.context.config
        return (
            config is not None
            and config.mode == DeploymentMode.INFRA
            and stage in PRIMARY_STAGES
        )

    def run_stage(self, stage: Stage):
        """Execute a single stage against the shared context."""
        self.context.current = stage
        logger.info(f"Stage {stage.value}")
        self._handlers[stage](self.context)
        self.context.completed.append(stage)

    def _lock(self) -> ContextManager[None]:
        if self.options.dry_run:
            return contextlib.nullcontext()
        return exclusive_lock(self.options.paths.lock_file)

    def run(self, progress_callback: Optional[Callable[[str], None]] = None) -> DeploymentResult:
        """
        Run every stage in order.

        Returns a DeploymentResult; failures are reported there with the
        failing stage and recent logs of the service involved.
        """
        start_time = time.time()
        result = DeploymentResult(success=False, message="")

        def progress(msg: str):
            if progress_callback:
                progress_callback(msg)

        try:
            self.options.validate()
            self.installer.check_privileges()
            with self._lock():
                for stage in PIPELINE:
                    if self.should_skip(stage):
                        logger.info(f"Skipping {stage.value} ({self.config.mode.value} mode)")
                        continue
                    progress(stage.value)
                    self.run_stage(stage)
            result.success = True
            result.message = (
                "Dry run completed; no changes were made"
                if self.options.dry_run
                else f"Deployment completed ({self.config.mode.value} mode)"
            )
        except DeploymentError as e:
            result.stage = self.context.current
            result.exit_code = e.exit_code
            result.manual_intervention = e.manual_intervention
            stage_name = result.stage.value if result.stage else "startup"
            result.message = f"{stage_name}: {e.message}"
            logger.error(f"Deployment failed during {stage_name}: {e.message}")
            if e.manual_intervention:
                logger.error("The host requires manual intervention before re-running.")
            result.diagnostics = self._diagnostics(e.service)
        except OSError as e:
            result.stage = self.context.current
            result.exit_code = 1
            stage_name = result.stage.value if result.stage else "startup"
            result.message = f"{stage_name}: {e}"
            logger.error(f"Deployment failed during {stage_name}: {e}")

        result.config = self.context.config
        result.services_started = self._started_services()
        result.duration_seconds = time.time() - start_time
        return result

    def _started_services(self) -> List[str]:
        started = []
        if Stage.CONFIGURE_DEPENDENT_SERVICES in self.context.completed:
            started.extend([POSTGRES_UNIT, REDIS_UNIT])
        if Stage.START_PRIMARY in self.context.completed:
            started.append(SERVICE_NAME)
        return started

    def _diagnostics(self, service: Optional[str]) -> List[str]:
        """Fetch and log recent journal lines for the failing service."""
        if not service:
            return []
        unit = service
        if self.context.config is not None and service in self.config.services:
            unit = self.config.services[service].unit
        lines = self.service_manager.get_logs(unit, tail=100)
        if lines:
            logger.warning(f"Recent logs for {unit}:")
            for line in lines:
                logger.warning(f"  {line}")
        return lines

    def _wait(self, descriptor: ServiceDescriptor):
        if self.options.dry_run:
            logger.info(f"Would have waited up to {descriptor.timeout:.0f}s for {descriptor.name}")
            return
        self.prober.wait_healthy(descriptor)

    # Stages

    def _resolve_config(self, ctx: DeploymentContext):
        ctx.config = resolve_config(ctx.options, self.store)
        state = ctx.config.state
        logger.info(
            f"Mode: {ctx.config.mode.value}, server {state.server_host}:{state.server_port}, "
            f"database {state.db_name} (user {state.db_user}), admin {state.admin_email}"
        )

    def _preflight(self, ctx: DeploymentContext):
        self.installer.check_environment()
        self.installer.install_packages(skip_update=ctx.options.skip_upgrade_system)
        if self.config.mode == DeploymentMode.FULL:
            self.installer.check_release_endpoint()

    def _provision_secrets(self, ctx: DeploymentContext):
        state = self.config.state
        policy = (
            SecretPolicy.FORCE_REGENERATE if ctx.options.force
            else SecretPolicy.GENERATE_IF_ABSENT
        )
        for name in SECRET_FIELDS:
            if state.source(name) == FieldSource.OVERRIDDEN:
                continue
            value, source = self.provisioner.ensure(name, policy, state.get(name))
            state.set(name, value, source)

    def _persist_state(self, ctx: DeploymentContext):
        self.store.save(self.config.state)

    def _configure_dependent_services(self, ctx: DeploymentContext):
        for descriptor in self.config.dependent_services():
            logger.info(f"Ensuring {descriptor.unit} is enabled and running...")
            if not self.service_manager.enable(descriptor.unit, now=True):
                raise CommandError(f"Failed to start {descriptor.unit}", service=descriptor.name)
            hook = self._service_hooks.get(descriptor.name)
            if hook is not None:
                hook(descriptor)
            self._wait(descriptor)

    def _redis_conf(self):
        candidates = self.config.paths.redis_conf_candidates
        for path in candidates:
            if path.is_file():
                return path
        return candidates[0]

    def _configure_redis(self, descriptor: ServiceDescriptor):
        path = self._redis_conf()
        logger.info(f"Configuring Redis password in {path}...")
        mutation = ConfigMutation.create(
            path, "requirepass", self.config.state.redis_password, now=self.now()
        )
        try:
            result = self.configurator.apply(
                mutation, reload=lambda: self.service_manager.restart(descriptor.unit)
            )
        except DeploymentError as e:
            e.service = e.service or descriptor.name
            raise
        self.context.mutations.append(result)

        if result.changed or self.options.dry_run:
            return
        # The file can be current while Redis still runs with an older
        # password, e.g. after a run interrupted before its restart.
        state = self.config.state
        if self.service_manager.redis_ping(state.redis_password, REDIS_HOST, REDIS_PORT):
            return
        logger.warning(f"{path} is current but Redis rejects the password; restarting {descriptor.unit}")
        if not self.service_manager.restart(descriptor.unit):
            raise CommandError(f"Failed to restart {descriptor.unit}", service=descriptor.name)

    def _synchronize_credentials(self, ctx: DeploymentContext):
        state = self.config.state
        logger.info(f"Synchronizing PostgreSQL credentials for user '{state.db_user}'...")
        if not self.service_manager.ensure_role(state.db_user, state.db_password):
            raise CredentialSyncError(
                f"Failed to synchronize PostgreSQL credentials for '{state.db_user}'",
                service=POSTGRES_UNIT,
            )
        if not self.service_manager.ensure_database(state.db_name, state.db_user):
            raise CredentialSyncError(
                f"Failed to create PostgreSQL database '{state.db_name}'",
                service=POSTGRES_UNIT,
            )

        logger.info("Verifying Redis accepts the configured password...")
        if not self.service_manager.redis_ping(state.redis_password, REDIS_HOST, REDIS_PORT):
            raise CredentialSyncError("Redis password verification failed", service=REDIS_UNIT)

    def _install_primary(self, ctx: DeploymentContext):
        state = self.config.state
        ctx.binary_installed = self.installer.install_binary(
            state.server_host,
            state.server_port,
            version=self.config.options.version,
            force=ctx.options.force,
        )

        env = runtime_environment(self.config)
        paths = self.config.paths
        if ctx.options.dry_run:
            logger.info(f"Would have written {paths.env_file} and {paths.dropin_file}")
            return
        logger.info(f"Writing runtime environment to {paths.env_file}")
        atomic_write(paths.env_file, render_env_file(env), mode=0o600)
        logger.info(f"Writing systemd drop-in {paths.dropin_file}")
        atomic_write(paths.dropin_file, render_dropin(env), mode=0o600)

    def _start_primary(self, ctx: DeploymentContext):
        logger.info(f"Reloading systemd and restarting {SERVICE_NAME}...")
        if not self.service_manager.daemon_reload():
            raise CommandError("systemctl daemon-reload failed")
        if not self.service_manager.enable(SERVICE_NAME):
            raise CommandError(f"Failed to enable {SERVICE_NAME}", service=SERVICE_NAME)
        if not self.service_manager.restart(SERVICE_NAME):
            raise CommandError(f"Failed to restart {SERVICE_NAME}", service=SERVICE_NAME)

    def _wait_primary_healthy(self, ctx: DeploymentContext):
        self._wait(self.config.services[SERVICE_NAME])

    def _endpoint_readiness(self, ctx: DeploymentContext):
        self._wait(self.config.services[ENDPOINT_SERVICE])

    def _emit_credentials(self, ctx: DeploymentContext):
        path = self.config.paths.credentials_file
        text = render_credentials(self.config, generated_at=self.now())
        if ctx.options.dry_run:
            logger.info(f"Would have written credentials to {path}")
            return
        atomic_write(path, text, mode=0o600)
        logger.info(f"Credentials written to {path}")
