"""
Host preparation around the orchestrated stages.

Handles:
- Supported-host checks (Debian/Ubuntu, systemd, privileges)
- apt package installation
- Release endpoint reachability
- Installing the API server binary through the project's install.sh
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

import requests

from .config import GITHUB_REPO, StackPaths
from .errors import CommandError, HostEnvironmentError
from .services import CommandRunner

logger = logging.getLogger(__name__)

PACKAGES = [
    "curl",
    "tar",
    "openssl",
    "ca-certificates",
    "postgresql",
    "redis-server",
    "redis-tools",
]

RELEASE_API_URL = f"https://api.github.com/repos/{GITHUB_REPO}/releases/latest"
INSTALL_SCRIPT_URL = f"https://raw.githubusercontent.com/{GITHUB_REPO}/main/deploy/install.sh"


def parse_os_release(text: str) -> Dict[str, str]:
    values = {}
    for line in text.splitlines():
        if "=" not in line or line.lstrip().startswith("#"):
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


class HostInstaller:
    """External collaborators the deployer drives only at their boundary."""

    def __init__(
        self,
        paths: StackPaths,
        runner: Optional[CommandRunner] = None,
        install_script: Optional[Path] = None,
    ):
        self.paths = paths
        self.runner = runner or CommandRunner()
        self.install_script = install_script

    @property
    def dry_run(self) -> bool:
        return self.runner.dry_run

    def check_privileges(self):
        """Every managed file is written in-process, so a real run must be root."""
        if not self.dry_run and os.geteuid() != 0:
            raise HostEnvironmentError(
                "Root privileges are required. Re-run with sudo or as root."
            )

    def check_environment(self) -> str:
        """Verify the host is supported and return its pretty name."""
        try:
            info = parse_os_release(self.paths.os_release.read_text())
        except FileNotFoundError:
            raise HostEnvironmentError(
                f"Unable to detect OS ({self.paths.os_release} missing)."
            )

        os_id = info.get("ID", "").lower()
        id_like = info.get("ID_LIKE", "").lower()
        if os_id not in ("ubuntu", "debian") and "debian" not in id_like:
            raise HostEnvironmentError(
                f"Unsupported OS: {info.get('ID', 'unknown')}. "
                "Only Ubuntu/Debian hosts are supported."
            )

        if shutil.which("systemctl") is None:
            raise HostEnvironmentError("systemctl not found. A systemd-based host is required.")

        pretty = info.get("PRETTY_NAME", os_id)
        logger.info(f"Detected OS: {pretty}")
        return pretty

    def install_packages(self, skip_update: bool = False, packages: Optional[List[str]] = None):
        packages = packages or PACKAGES
        if skip_update:
            logger.warning("Skipping apt-get update (--skip-upgrade-system enabled).")
        else:
            logger.info("Running apt-get update...")
            result = self.runner.run(["apt-get", "update"])
            if result.returncode != 0:
                raise CommandError(f"apt-get update failed: {result.stderr.strip()}")

        logger.info(f"Installing dependencies: {' '.join(packages)}")
        result = self.runner.run(
            ["env", "DEBIAN_FRONTEND=noninteractive", "apt-get", "install", "-y", *packages]
        )
        if result.returncode != 0:
            raise CommandError(f"apt-get install failed: {result.stderr.strip()}")

    def check_release_endpoint(self):
        if self.dry_run:
            logger.info("Would have checked the release endpoint")
            return
        logger.info("Checking GitHub release endpoint...")
        try:
            response = requests.get(RELEASE_API_URL, timeout=30)
            response.raise_for_status()
        except requests.RequestException as e:
            raise HostEnvironmentError(
                f"Failed to reach GitHub release API ({e}). "
                "Please verify network access and retry."
            )

    def is_installed(self) -> bool:
        binary = self.paths.binary
        return (
            binary.is_file()
            and os.access(binary, os.X_OK)
            and self.paths.service_file.is_file()
        )

    def _download_script(self) -> Path:
        logger.info("Local install.sh not found, downloading from GitHub...")
        try:
            response = requests.get(INSTALL_SCRIPT_URL, timeout=60)
            response.raise_for_status()
        except requests.RequestException as e:
            raise HostEnvironmentError(f"Failed to download install.sh: {e}")
        fd, name = tempfile.mkstemp(prefix="sub2api-install-", suffix=".sh")
        with os.fdopen(fd, "w") as f:
            f.write(response.text)
        return Path(name)

    def install_binary(
        self,
        server_host: str,
        server_port: int,
        version: Optional[str] = None,
        force: bool = False,
    ) -> bool:
        """Install the API server unless it is already present. Returns True when installed."""
        if self.is_installed() and not force:
            logger.info("Sub2API binary already installed. Skipping reinstall (use --force to reinstall).")
            return False

        if self.dry_run and self.install_script is None:
            logger.info(f"Would have downloaded {INSTALL_SCRIPT_URL}")
            script = Path("install.sh")
            downloaded = False
        elif self.install_script is not None:
            script = self.install_script
            downloaded = False
        else:
            script = self._download_script()
            downloaded = True

        cmd = [
            "bash",
            str(script),
            "install",
            "--non-interactive",
            "--server-host",
            server_host,
            "--server-port",
            str(server_port),
        ]
        if version:
            cmd.extend(["--version", version])

        logger.info(f"Installing Sub2API binary{f' {version}' if version else ''} via install.sh...")
        try:
            result = self.runner.run(cmd)
        finally:
            if downloaded:
                script.unlink(missing_ok=True)
        if result.returncode != 0:
            raise CommandError(f"install.sh failed: {result.stderr.strip()}")
        return True
