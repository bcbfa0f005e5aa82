"""
Service management for the units the deployer drives.

Handles:
- Running host commands (with runuser and dry-run support)
- systemd unit lifecycle (enable, restart, daemon-reload, status)
- Journal access for diagnostics
- PostgreSQL role/database operations and Redis authentication checks
"""

import logging
import shlex
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

import redis

logger = logging.getLogger(__name__)


class ServiceStatus(Enum):
    """Service status states."""
    RUNNING = "running"
    STARTING = "starting"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"
    UNKNOWN = "unknown"


ACTIVE_STATE_MAP = {
    "active": ServiceStatus.RUNNING,
    "activating": ServiceStatus.STARTING,
    "reloading": ServiceStatus.STARTING,
    "deactivating": ServiceStatus.STOPPING,
    "inactive": ServiceStatus.STOPPED,
    "failed": ServiceStatus.FAILED,
}


@dataclass
class ServiceInfo:
    """Status of a systemd unit as reported by `systemctl show`."""
    name: str
    status: ServiceStatus
    active_state: str = ""
    sub_state: str = ""
    unit_file_state: str = ""


class CommandRunner:
    """Runs host commands as root, or as another user through runuser."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def build(self, cmd: Sequence[str], user: Optional[str] = None) -> List[str]:
        if user is not None:
            return ["runuser", "-u", user, "--", *cmd]
        return list(cmd)

    def run(
        self,
        cmd: Sequence[str],
        user: Optional[str] = None,
        input: Optional[str] = None,
        dry_run_safe: bool = False,
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        """Run cmd and return the completed process without raising on failure."""
        full = self.build(cmd, user)
        display = shlex.join(full)
        if self.dry_run and not dry_run_safe:
            logger.info(f"Would have run: {display}")
            return subprocess.CompletedProcess(full, 0, "", "")

        logger.debug(f"Run: {display}")
        try:
            return subprocess.run(
                full,
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            return subprocess.CompletedProcess(full, 127, "", str(e))
        except subprocess.TimeoutExpired:
            return subprocess.CompletedProcess(full, 124, "", f"Timed out: {display}")


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class ServiceManager:
    """
    Manages the systemd units of the stack.

    Provides:
    - Unit lifecycle management
    - Status and journal inspection
    - Service-specific operations for PostgreSQL and Redis
    """

    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or CommandRunner()

    @property
    def dry_run(self) -> bool:
        return self.runner.dry_run

    def _systemctl(self, *args: str, dry_run_safe: bool = False) -> subprocess.CompletedProcess:
        return self.runner.run(["systemctl", *args], dry_run_safe=dry_run_safe)

    def daemon_reload(self) -> bool:
        result = self._systemctl("daemon-reload")
        if result.returncode == 0:
            return True
        logger.error(f"systemctl daemon-reload failed: {result.stderr.strip()}")
        return False

    def enable(self, unit: str, now: bool = False) -> bool:
        """Enable a unit, optionally starting it."""
        args = ["enable", "--now", unit] if now else ["enable", unit]
        result = self._systemctl(*args)
        if result.returncode == 0:
            logger.info(f"Enabled service: {unit}{' (started)' if now else ''}")
            return True
        logger.error(f"Failed to enable {unit}: {result.stderr.strip()}")
        return False

    def restart(self, unit: str) -> bool:
        """Restart a unit, starting it if it was not running."""
        result = self._systemctl("restart", unit)
        if result.returncode == 0:
            logger.info(f"Restarted service: {unit}")
            return True
        logger.error(f"Failed to restart {unit}: {result.stderr.strip()}")
        return False

    def get_info(self, unit: str) -> ServiceInfo:
        result = self._systemctl(
            "show",
            unit,
            "--no-page",
            "--property=ActiveState,SubState,UnitFileState",
            dry_run_safe=True,
        )
        if result.returncode != 0:
            return ServiceInfo(name=unit, status=ServiceStatus.UNKNOWN)

        props: Dict[str, str] = {}
        for line in result.stdout.splitlines():
            if "=" in line:
                key, value = line.split("=", 1)
                props[key.strip()] = value.strip()

        active = props.get("ActiveState", "")
        return ServiceInfo(
            name=unit,
            status=ACTIVE_STATE_MAP.get(active, ServiceStatus.UNKNOWN),
            active_state=active,
            sub_state=props.get("SubState", ""),
            unit_file_state=props.get("UnitFileState", ""),
        )

    def get_status(self, unit: str) -> ServiceStatus:
        """Get the status of a unit."""
        return self.get_info(unit).status

    def get_logs(self, unit: str, tail: int = 100) -> List[str]:
        """Get recent journal lines for a unit."""
        result = self.runner.run(
            ["journalctl", "-u", unit, "-n", str(tail), "--no-pager"],
            dry_run_safe=True,
        )
        output = (result.stdout + result.stderr).strip()
        return output.split("\n") if output else []

    # PostgreSQL

    def _psql(self, sql: str, database: str = "postgres", tuples_only: bool = False) -> subprocess.CompletedProcess:
        cmd = ["psql", "-v", "ON_ERROR_STOP=1", "--dbname", database]
        if tuples_only:
            cmd.append("-tA")
        # SQL goes through stdin so credentials never appear in argv
        return self.runner.run(cmd, user="postgres", input=sql)

    def postgres_query(self, sql: str, database: str = "postgres") -> Optional[str]:
        """Run a query and return its unaligned output, or None on failure."""
        result = self._psql(sql, database=database, tuples_only=True)
        if result.returncode != 0:
            logger.error(f"PostgreSQL query failed: {result.stderr.strip()}")
            return None
        return result.stdout.strip()

    def postgres_execute(self, sql: str, database: str = "postgres") -> bool:
        result = self._psql(sql, database=database)
        if result.returncode != 0:
            logger.error(f"PostgreSQL statement failed: {result.stderr.strip()}")
            return False
        return True

    def ensure_role(self, user: str, password: str) -> bool:
        """Create the login role, or reset its password if it already exists."""
        exists = self.postgres_query(
            f"SELECT 1 FROM pg_roles WHERE rolname = {quote_literal(user)};"
        )
        if exists is None:
            return False
        verb = "ALTER ROLE" if exists == "1" else "CREATE ROLE"
        keyword = "WITH LOGIN" if exists == "1" else "LOGIN"
        logger.info(f"{'Updating' if exists == '1' else 'Creating'} PostgreSQL role '{user}'")
        return self.postgres_execute(
            f"{verb} {quote_ident(user)} {keyword} PASSWORD {quote_literal(password)};"
        )

    def ensure_database(self, name: str, owner: str) -> bool:
        """Create the database owned by owner unless it already exists."""
        exists = self.postgres_query(
            f"SELECT 1 FROM pg_database WHERE datname = {quote_literal(name)};"
        )
        if exists is None:
            return False
        if exists == "1":
            logger.info(f"PostgreSQL database '{name}' already exists")
            return True
        result = self.runner.run(["createdb", f"--owner={owner}", name], user="postgres")
        if result.returncode != 0:
            logger.error(f"Failed to create database {name}: {result.stderr.strip()}")
            return False
        logger.info(f"Created PostgreSQL database '{name}'")
        return True

    # Redis

    def redis_ping(self, password: str, host: str = "127.0.0.1", port: int = 6379) -> bool:
        """Check that Redis answers PING when authenticated with password."""
        if self.dry_run:
            logger.info(f"Would have verified Redis authentication on {host}:{port}")
            return True
        client = redis.Redis(host=host, port=port, password=password, socket_timeout=5)
        try:
            return bool(client.ping())
        except redis.RedisError as e:
            logger.error(f"Redis authentication check failed: {e}")
            return False
        finally:
            client.close()
