"""
Deployment state and secret provisioning.

Handles:
- The DeploymentState record (field values plus where each came from)
- Generate-or-reuse decisions for managed secrets
- Loading and atomically saving the persisted KEY=VALUE state file
"""

import logging
import secrets
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .errors import SecretGenerationError, StateError
from .files import atomic_write

logger = logging.getLogger(__name__)


STATE_FIELDS = (
    "POSTGRES_APP_USER",
    "POSTGRES_APP_DB",
    "POSTGRES_APP_PASSWORD",
    "REDIS_APP_PASSWORD",
    "JWT_SECRET",
    "ADMIN_EMAIL",
    "ADMIN_PASSWORD",
    "SERVER_HOST",
    "SERVER_PORT",
)

SECRET_FIELDS = (
    "POSTGRES_APP_PASSWORD",
    "REDIS_APP_PASSWORD",
    "JWT_SECRET",
    "ADMIN_PASSWORD",
)

# 32 random bytes, 64 hex characters
SECRET_BYTES = 32


class FieldSource(Enum):
    """Where the value of a state field came from on this run."""
    GENERATED = "generated"
    OVERRIDDEN = "overridden"
    REUSED = "reused"
    DEFAULT = "default"


class SecretPolicy(Enum):
    """How the provisioner treats an existing secret value."""
    GENERATE_IF_ABSENT = "generate-if-absent"
    FORCE_REGENERATE = "force-regenerate"


@dataclass
class DeploymentState:
    """All generated and overridden values for one host deployment."""

    values: Dict[str, str] = field(default_factory=lambda: {k: "" for k in STATE_FIELDS})
    sources: Dict[str, FieldSource] = field(default_factory=dict)

    def get(self, key: str) -> str:
        return self.values.get(key, "")

    def set(self, key: str, value: str, source: FieldSource):
        if key not in STATE_FIELDS:
            raise KeyError(f"Unknown state field: {key}")
        self.values[key] = value
        self.sources[key] = source

    def source(self, key: str) -> Optional[FieldSource]:
        return self.sources.get(key)

    def missing(self) -> List[str]:
        return [k for k in STATE_FIELDS if not self.values.get(k)]

    @property
    def db_user(self) -> str:
        return self.get("POSTGRES_APP_USER")

    @property
    def db_name(self) -> str:
        return self.get("POSTGRES_APP_DB")

    @property
    def db_password(self) -> str:
        return self.get("POSTGRES_APP_PASSWORD")

    @property
    def redis_password(self) -> str:
        return self.get("REDIS_APP_PASSWORD")

    @property
    def jwt_secret(self) -> str:
        return self.get("JWT_SECRET")

    @property
    def admin_email(self) -> str:
        return self.get("ADMIN_EMAIL")

    @property
    def admin_password(self) -> str:
        return self.get("ADMIN_PASSWORD")

    @property
    def server_host(self) -> str:
        return self.get("SERVER_HOST")

    @property
    def server_port(self) -> int:
        return int(self.get("SERVER_PORT"))

    def to_text(self) -> str:
        """Serialize as flat KEY=VALUE lines in a fixed order."""
        return "".join(f"{key}={self.get(key)}\n" for key in STATE_FIELDS)

    @classmethod
    def from_text(cls, text: str) -> "DeploymentState":
        """Parse KEY=VALUE lines. Unknown keys are ignored, missing keys stay empty."""
        state = cls()
        for line in text.splitlines():
            if not line.strip() or line.lstrip().startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip()
            if key in STATE_FIELDS:
                state.values[key] = value
        return state


class SecretProvisioner:
    """Generates or reuses credential values under a stable policy."""

    def __init__(self, token_hex: Callable[[int], str] = secrets.token_hex):
        self._token_hex = token_hex

    def generate(self) -> str:
        try:
            return self._token_hex(SECRET_BYTES)
        except (NotImplementedError, OSError) as e:
            raise SecretGenerationError(f"Randomness source unavailable: {e}")

    def ensure(
        self,
        field_name: str,
        policy: SecretPolicy,
        existing: str = "",
    ) -> Tuple[str, FieldSource]:
        """Return the value to use for field_name and its source."""
        if existing and policy != SecretPolicy.FORCE_REGENERATE:
            logger.debug(f"Reusing existing value for {field_name}")
            return existing, FieldSource.REUSED
        logger.info(f"Generating new value for {field_name}")
        return self.generate(), FieldSource.GENERATED


class StateStore:
    """Owner-only persisted record of the deployment state."""

    def __init__(self, path: Path, dry_run: bool = False):
        self.path = Path(path)
        self.dry_run = dry_run

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Optional[DeploymentState]:
        """Load the persisted state, or None on a first run."""
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info(f"No deployment state at {self.path}; treating as first run")
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise StateError(f"Unable to read deployment state {self.path}: {e}")

        logger.info(f"Loading existing deployment state from {self.path}")
        return DeploymentState.from_text(text)

    def save(self, state: DeploymentState):
        """Replace the persisted state with state as a whole."""
        if self.dry_run:
            logger.info(f"Would have written deployment state to {self.path}")
            return
        try:
            atomic_write(self.path, state.to_text(), mode=0o600)
        except OSError as e:
            raise StateError(f"Unable to write deployment state {self.path}: {e}")
        logger.info(f"Saved deployment state to {self.path}")
