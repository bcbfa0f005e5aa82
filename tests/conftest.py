from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from stackdeploy.config import DeployOptions, StackPaths
from stackdeploy.core import StackDeployer
from stackdeploy.errors import HostEnvironmentError
from stackdeploy.files import atomic_write
from stackdeploy.services import ServiceStatus

REDIS_CONF = """\
bind 127.0.0.1 -::1
port 6379
# requirepass foobared
maxmemory-policy noeviction
"""

OS_RELEASE = """\
PRETTY_NAME="Debian GNU/Linux 12 (bookworm)"
NAME="Debian GNU/Linux"
ID=debian
"""

FIXED_NOW = datetime(2026, 1, 2, 3, 4, 5)


class FakeServiceManager:
    """Records every call; results can be scripted per unit."""

    def __init__(self):
        self.dry_run = False
        self.calls: List[tuple] = []
        self.restart_results: Dict[str, List[bool]] = {}
        self.statuses: Dict[str, ServiceStatus] = {}
        self.role_ok = True
        self.database_ok = True
        self.ping_ok = True
        self.ping_results: List[bool] = []
        self.logs = ["journal line 1", "journal line 2"]

    def daemon_reload(self) -> bool:
        self.calls.append(("daemon-reload",))
        return True

    def enable(self, unit: str, now: bool = False) -> bool:
        self.calls.append(("enable", unit, now))
        return True

    def restart(self, unit: str) -> bool:
        self.calls.append(("restart", unit))
        results = self.restart_results.get(unit)
        if results:
            return results.pop(0) if len(results) > 1 else results[0]
        return True

    def get_status(self, unit: str) -> ServiceStatus:
        return self.statuses.get(unit, ServiceStatus.RUNNING)

    def get_logs(self, unit: str, tail: int = 100) -> List[str]:
        self.calls.append(("logs", unit))
        return list(self.logs)

    def ensure_role(self, user: str, password: str) -> bool:
        self.calls.append(("role", user, password))
        return self.role_ok

    def ensure_database(self, name: str, owner: str) -> bool:
        self.calls.append(("database", name, owner))
        return self.database_ok

    def redis_ping(self, password: str, host: str = "127.0.0.1", port: int = 6379) -> bool:
        self.calls.append(("ping", password))
        if self.ping_results:
            return self.ping_results.pop(0)
        return self.ping_ok

    def restarts(self) -> List[str]:
        return [c[1] for c in self.calls if c[0] == "restart"]


class FakeInstaller:
    def __init__(self):
        self.calls: List[tuple] = []
        self.privileged = True

    def check_privileges(self):
        self.calls.append(("check_privileges",))
        if not self.privileged:
            raise HostEnvironmentError("Root privileges are required. Re-run with sudo or as root.")

    def check_environment(self) -> str:
        self.calls.append(("check_environment",))
        return "Debian"

    def install_packages(self, skip_update: bool = False, packages=None):
        self.calls.append(("install_packages", skip_update))

    def check_release_endpoint(self):
        self.calls.append(("check_release_endpoint",))

    def install_binary(self, server_host, server_port, version=None, force=False) -> bool:
        self.calls.append(("install_binary", server_host, server_port, version, force))
        return True

    def called(self, name: str) -> bool:
        return any(c[0] == name for c in self.calls)


class FakeProber:
    def __init__(self):
        self.waited: List[str] = []
        self.failures: Dict[str, Exception] = {}

    def wait_healthy(self, descriptor, timeout: Optional[float] = None):
        self.waited.append(descriptor.name)
        if descriptor.name in self.failures:
            raise self.failures[descriptor.name]


@pytest.fixture
def paths(tmp_path: Path) -> StackPaths:
    paths = StackPaths.under(tmp_path)
    atomic_write(paths.os_release, OS_RELEASE, mode=0o644)
    atomic_write(paths.redis_conf_candidates[0], REDIS_CONF, mode=0o640)
    return paths


@pytest.fixture
def services() -> FakeServiceManager:
    return FakeServiceManager()


@pytest.fixture
def installer() -> FakeInstaller:
    return FakeInstaller()


@pytest.fixture
def prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def make_deployer(paths, services, installer, prober):
    def factory(**kwargs) -> StackDeployer:
        options = DeployOptions(paths=paths, non_interactive=True, **kwargs)
        return StackDeployer(
            options,
            service_manager=services,
            prober=prober,
            installer=installer,
            now=lambda: FIXED_NOW,
        )

    return factory
