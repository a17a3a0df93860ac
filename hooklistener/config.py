import json
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import click

from .errors import ConfigError

APP_NAME = "hooklistener"


@dataclass
class Config:
    """Per-user CLI configuration stored as JSON in the click application directory"""

    access_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    relay_url: Optional[str] = None
    selected_organization_id: Optional[str] = None

    @staticmethod
    def config_dir() -> Path:
        override = os.getenv("HOOKLISTENER_CONFIG_DIR")
        if override:
            return Path(override)
        return Path(click.get_app_dir(APP_NAME))

    @classmethod
    def config_path(cls) -> Path:
        return cls.config_dir() / "config.json"

    @classmethod
    def load(cls) -> "Config":
        path = cls.config_path()
        if not path.exists():
            return cls()

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except PermissionError as e:
            raise ConfigError(f"Permission denied: {path}") from e
        except (OSError, ValueError) as e:
            raise ConfigError(f"Failed to parse config: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError("Failed to parse config: expected a JSON object")

        expires_at = data.get("token_expires_at")
        try:
            expires_at = datetime.fromisoformat(expires_at) if expires_at else None
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Failed to parse config: invalid token_expires_at {expires_at!r}") from e
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        return cls(
            access_token=data.get("access_token"),
            token_expires_at=expires_at,
            relay_url=data.get("relay_url"),
            selected_organization_id=data.get("selected_organization_id"),
        )

    def save(self):
        path = self.config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "access_token": self.access_token,
            "token_expires_at": self.token_expires_at.isoformat() if self.token_expires_at else None,
            "relay_url": self.relay_url,
            "selected_organization_id": self.selected_organization_id,
        }
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        # The file holds a bearer token
        path.chmod(0o600)

    def set_access_token(self, access_token: str, expires_in: Optional[int] = None):
        self.access_token = access_token
        if expires_in:
            self.token_expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        else:
            self.token_expires_at = None

    def is_token_valid(self) -> bool:
        if not self.access_token:
            return False
        if self.token_expires_at is None:
            return True
        return datetime.now(timezone.utc) < self.token_expires_at

    def clear_token(self):
        self.access_token = None
        self.token_expires_at = None

    def masked_token(self) -> Optional[str]:
        if not self.access_token:
            return None
        if len(self.access_token) <= 8:
            return "*" * len(self.access_token)
        return f"{self.access_token[:4]}...{self.access_token[-4:]}"
