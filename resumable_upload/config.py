"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from .file.chunker import CHUNK_SIZE


@dataclass
class Config:
    """
    Resumable upload configuration, shared by server and client.

    Configuration priority (highest to lowest):
    1. Environment variables (RU_*)
    2. Config file (config.json)
    3. Default values
    """
    # Server
    host: str = '0.0.0.0'
    api_port: int = 8080

    # Storage
    data_dir: Path = field(default_factory=lambda: Path('./upload_data'))

    # Transfer
    chunk_size: int = CHUNK_SIZE
    max_concurrent_uploads: int = 5

    # Client
    server_url: str = 'http://localhost:8080'
    request_timeout: float = 30.0

    # Logging
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        # Server
        config.host = os.getenv('RU_HOST', config.host)
        config.api_port = int(os.getenv('RU_API_PORT', config.api_port))

        # Storage
        data_dir = os.getenv('RU_DATA_DIR')
        if data_dir:
            config.data_dir = Path(data_dir)

        # Transfer
        config.chunk_size = int(os.getenv('RU_CHUNK_SIZE', config.chunk_size))
        config.max_concurrent_uploads = int(
            os.getenv('RU_MAX_CONCURRENT', config.max_concurrent_uploads)
        )

        # Client
        config.server_url = os.getenv('RU_SERVER_URL', config.server_url)
        config.request_timeout = float(
            os.getenv('RU_REQUEST_TIMEOUT', config.request_timeout)
        )

        # Logging
        config.log_level = os.getenv('RU_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        # Server
        config.host = data.get('host', config.host)
        config.api_port = data.get('api_port', config.api_port)

        # Storage
        if 'data_dir' in data:
            config.data_dir = Path(data['data_dir'])

        # Transfer
        config.chunk_size = data.get('chunk_size', config.chunk_size)
        config.max_concurrent_uploads = data.get(
            'max_concurrent_uploads', config.max_concurrent_uploads
        )

        # Client
        config.server_url = data.get('server_url', config.server_url)
        config.request_timeout = data.get('request_timeout', config.request_timeout)

        # Logging
        config.log_level = data.get('log_level', config.log_level)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'host': self.host,
            'api_port': self.api_port,
            'data_dir': str(self.data_dir),
            'chunk_size': self.chunk_size,
            'max_concurrent_uploads': self.max_concurrent_uploads,
            'server_url': self.server_url,
            'request_timeout': self.request_timeout,
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    # Start with defaults
    config = Config()

    # Load from file if provided
    if config_path and config_path.exists():
        config = Config.from_file(config_path)

    # Override with environment variables
    env_config = Config.from_env()

    # Merge (env takes precedence for non-default values)
    defaults = Config()
    for key in ['host', 'api_port', 'data_dir', 'chunk_size',
                'max_concurrent_uploads', 'server_url', 'request_timeout',
                'log_level']:
        env_val = getattr(env_config, key)
        if env_val != getattr(defaults, key):
            setattr(config, key, env_val)

    return config


# Example config file template
EXAMPLE_CONFIG = """
{
  "host": "0.0.0.0",
  "api_port": 8080,
  "data_dir": "./upload_data",
  "chunk_size": 5242880,
  "max_concurrent_uploads": 5,
  "server_url": "http://localhost:8080",
  "request_timeout": 30.0,
  "log_level": "INFO"
}
"""
