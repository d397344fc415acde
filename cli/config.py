"""Configuration management for the modelctl client."""

import json
import os
import shutil
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ValidationError, field_validator

from common.constants import DEFAULT_CHUNK_SIZE_BYTES, DEFAULT_GRPC_TIMEOUT_SECONDS, DEFAULT_SERVER
from common.logging_config import get_logger
from modelclient.exceptions import InvalidInputError
from modelclient.session import SessionContext

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / '.modelctl' / 'config.json'

# Environment variable -> config key
ENV_OVERRIDES = {
    'MODELCTL_SERVER': 'server',
    'MODELCTL_USERNAME': 'username',
    'MODELCTL_PASSWORD': 'password',
    'MODELCTL_SCHEMA': 'schema',
}


class ClientSettings(BaseModel):
    """Validated client settings."""
    server: str
    username: str
    password: str
    timeout: float = DEFAULT_GRPC_TIMEOUT_SECONDS
    chunk_size: int = DEFAULT_CHUNK_SIZE_BYTES
    schema_path: Optional[str] = None

    @field_validator('server', 'username', 'password')
    @classmethod
    def not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError('must not be empty')
        return v

    @field_validator('timeout', 'chunk_size')
    @classmethod
    def positive(cls, v):
        if v <= 0:
            raise ValueError('must be positive')
        return v


class Config:
    """Manages client configuration stored in a JSON file."""

    DEFAULT_CONFIG = {
        "server": DEFAULT_SERVER,
        "username": "",
        "password": "",
        "timeout": DEFAULT_GRPC_TIMEOUT_SECONDS,
        "chunk_size": DEFAULT_CHUNK_SIZE_BYTES,
        "schema": None,
    }

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration manager.

        Args:
            config_path: Path to config JSON file (typically ~/.modelctl/config.json)
        """
        self.config_path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
        self.data = self._load()

    def _load(self) -> dict:
        """
        Load configuration from file, creating defaults if necessary.

        Returns:
            Configuration dictionary
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Cannot create config directory {self.config_path.parent}: {e}")

        if self.config_path.exists():
            try:
                with open(self.config_path, 'r') as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError("config root must be an object")
                config = self.DEFAULT_CONFIG.copy()
                config.update(data)
                return config
            except (ValueError, OSError) as e:
                backup_path = self.config_path.with_suffix('.json.bak')
                logger.warning(f"Corrupted config {self.config_path} ({e}), backing up to {backup_path}")
                try:
                    shutil.copy(self.config_path, backup_path)
                except OSError as copy_error:
                    logger.warning(f"Failed to back up config: {copy_error}")
                return self.DEFAULT_CONFIG.copy()
        else:
            config = self.DEFAULT_CONFIG.copy()
            try:
                with open(self.config_path, 'w') as f:
                    json.dump(config, f, indent=2)
            except OSError as e:
                logger.warning(f"Failed to write default config {self.config_path}: {e}")
            return config

    def save(self) -> None:
        """Save current configuration to file."""
        try:
            with open(self.config_path, 'w') as f:
                json.dump(self.data, f, indent=2)
        except OSError as e:
            logger.warning(f"Failed to save config {self.config_path}: {e}")

    def _get(self, key: str):
        for env_name, config_key in ENV_OVERRIDES.items():
            if config_key == key and os.environ.get(env_name):
                return os.environ[env_name]
        return self.data.get(key, self.DEFAULT_CONFIG.get(key))

    def get_server(self) -> str:
        return self._get('server')

    def get_schema_path(self) -> Optional[str]:
        """
        Get the schema descriptor file, if one is configured.

        Returns:
            Path string or None
        """
        return self._get('schema')

    def set_credentials(self, username: str, password: str) -> None:
        """
        Set username and password and save to file.

        Args:
            username: Basic-auth username
            password: Basic-auth password
        """
        self.data['username'] = username
        self.data['password'] = password
        self.save()

    def to_settings(self) -> ClientSettings:
        """
        Validate the effective configuration (file plus environment).

        Raises:
            InvalidInputError: If a setting is missing or out of range
        """
        try:
            return ClientSettings(
                server=self._get('server') or '',
                username=self._get('username') or '',
                password=self._get('password') or '',
                timeout=self._get('timeout'),
                chunk_size=self._get('chunk_size'),
                schema_path=self._get('schema'),
            )
        except ValidationError as e:
            problems = '; '.join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise InvalidInputError(f"Invalid configuration in {self.config_path}: {problems}")

    def session(self, assume_yes: bool = False) -> SessionContext:
        """
        Build the session context for a client run.

        Args:
            assume_yes: Skip confirmation prompts

        Returns:
            Immutable SessionContext
        """
        settings = self.to_settings()
        return SessionContext(
            server=settings.server,
            username=settings.username,
            password=settings.password,
            timeout=settings.timeout,
            assume_yes=assume_yes,
            chunk_size=settings.chunk_size,
        )
