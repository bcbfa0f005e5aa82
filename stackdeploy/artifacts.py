"""
Files generated for the API server and the operator.

Handles:
- The runtime environment artifact rendered from the packaged template
- The systemd drop-in carrying the same settings
- The credential report written at the end of a successful run
"""

from collections import OrderedDict
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Mapping, Optional

from .config import (
    DATABASE_HOST,
    DATABASE_PORT,
    REDIS_HOST,
    REDIS_PORT,
    StackConfig,
)
from .errors import ValidationError

TEMPLATE_DIR = Path(__file__).parent / "templates"
ENV_TEMPLATE = "sub2api.env.example"


def runtime_environment(config: StackConfig) -> Dict[str, str]:
    """Settings the API server needs at startup, in a stable order."""
    state = config.state
    return OrderedDict(
        [
            ("AUTO_SETUP", "true"),
            ("GIN_MODE", "release"),
            ("SERVER_HOST", state.server_host),
            ("SERVER_PORT", str(state.server_port)),
            ("DATABASE_HOST", DATABASE_HOST),
            ("DATABASE_PORT", str(DATABASE_PORT)),
            ("DATABASE_USER", state.db_user),
            ("DATABASE_PASSWORD", state.db_password),
            ("DATABASE_DBNAME", state.db_name),
            ("DATABASE_SSLMODE", "disable"),
            ("REDIS_HOST", REDIS_HOST),
            ("REDIS_PORT", str(REDIS_PORT)),
            ("REDIS_PASSWORD", state.redis_password),
            ("REDIS_DB", "0"),
            ("ADMIN_EMAIL", state.admin_email),
            ("ADMIN_PASSWORD", state.admin_password),
            ("JWT_SECRET", state.jwt_secret),
        ]
    )


def load_template(name: str = ENV_TEMPLATE) -> str:
    return (TEMPLATE_DIR / name).read_text()


def set_env_value(text: str, key: str, value: str) -> str:
    """
    Set key to value in KEY=VALUE text.

    Every line starting with exactly `key=` is replaced; the key is
    appended when absent. The value is inserted literally, so characters
    such as `&`, `/` or `\\` survive unchanged.
    """
    if "\n" in value or "\r" in value:
        raise ValidationError(f"Value for {key} must not contain a newline")
    prefix = f"{key}="
    lines = text.splitlines(keepends=True)
    found = False
    for i, line in enumerate(lines):
        if line.startswith(prefix):
            ending = line[len(line.rstrip("\r\n")):]
            lines[i] = f"{prefix}{value}{ending}"
            found = True
    if not found:
        if lines and not lines[-1].endswith("\n"):
            lines[-1] += "\n"
        lines.append(f"{prefix}{value}\n")
    return "".join(lines)


def render_env_file(env: Mapping[str, str], template: Optional[str] = None) -> str:
    text = load_template() if template is None else template
    for key, value in env.items():
        text = set_env_value(text, key, value)
    return text


def parse_env(text: str) -> Dict[str, str]:
    """Read KEY=VALUE text back, splitting on the first `=`. Later keys win."""
    values: Dict[str, str] = {}
    for line in text.splitlines():
        if not line.strip() or line.lstrip().startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value
    return values


def escape_systemd_value(value: str) -> str:
    """Escape value for use inside a double-quoted systemd Environment= assignment."""
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("%", "%%")


def render_dropin(env: Mapping[str, str]) -> str:
    lines = ["[Service]"]
    for key, value in env.items():
        if "\n" in value or "\r" in value:
            raise ValidationError(f"Value for {key} must not contain a newline")
        lines.append(f'Environment="{key}={escape_systemd_value(value)}"')
    return "\n".join(lines) + "\n"


def render_credentials(config: StackConfig, generated_at: Optional[datetime] = None) -> str:
    """Operator-facing report of every secret and endpoint of the deployment."""
    state = config.state
    paths = config.paths
    stamp = (generated_at or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M:%SZ")
    lines = [
        "Sub2API one-click deployment credentials",
        f"Generated at: {stamp}",
        f"Mode: {config.mode.value}",
        "",
        f"SERVER_HOST={state.server_host}",
        f"SERVER_PORT={state.server_port}",
        f"SERVICE_URL={config.display_url}",
        "",
        f"POSTGRES_HOST={DATABASE_HOST}",
        f"POSTGRES_PORT={DATABASE_PORT}",
        f"POSTGRES_DB={state.db_name}",
        f"POSTGRES_USER={state.db_user}",
        f"POSTGRES_PASSWORD={state.db_password}",
        "",
        f"REDIS_HOST={REDIS_HOST}",
        f"REDIS_PORT={REDIS_PORT}",
        f"REDIS_PASSWORD={state.redis_password}",
        "",
        f"ADMIN_EMAIL={state.admin_email}",
        f"ADMIN_PASSWORD={state.admin_password}",
        "",
        f"JWT_SECRET={state.jwt_secret}",
        f"STATE_FILE={paths.state_file}",
        f"DROPIN_FILE={paths.dropin_file}",
        f"ENV_FILE={paths.env_file}",
    ]
    return "\n".join(lines) + "\n"
