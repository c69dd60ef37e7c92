"""
Configuration management for chillfi-client.

This module handles loading, validating, and providing access to the
client configuration stored in config.yaml.

The configuration file contains:
    - Service URL (WebSocket call channel and HTTP bulk channel share it)
    - Bearer token, or the name of the environment variable holding it
    - Reconnection policy (fixed delay, attempt cap)
    - Call timeouts (regular and transfer-class)
    - Local cache location and TTLs
    - Upload chunk sizes and resume limits

Configuration File Location:
    The config.yaml file is looked up in the current working directory
    unless an explicit path is given.

Example config.yaml:
    server:
      url: "https://music.example.com:3005"

    auth:
      token_env: "CHILLFI_TOKEN"   # or token: "eyJhbGciOi..."

    connection:
      reconnect_delay: 5.0
      max_reconnect_attempts: 10

    rpc:
      timeout: 10.0
      transfer_timeout: 300.0

    cache:
      directory: "~/.cache/chillfi"
      snapshot_ttl: 300
      playback_url_ttl: 2700

    upload:
      avatar_chunk_size: 65536
      album_art_chunk_size: 524288
      max_resume_attempts: 3
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from chillfi_client.core.exceptions import ConfigError


# Default configuration file name (always in current working directory)
CONFIG_FILENAME = "config.yaml"

DEFAULT_TOKEN_ENV = "CHILLFI_TOKEN"
DEFAULT_RECONNECT_DELAY = 5.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 10
DEFAULT_CALL_TIMEOUT = 10.0
DEFAULT_TRANSFER_TIMEOUT = 300.0
DEFAULT_CACHE_DIRECTORY = "~/.cache/chillfi"
DEFAULT_SNAPSHOT_TTL = 300
DEFAULT_PLAYBACK_URL_TTL = 45 * 60
DEFAULT_AVATAR_CHUNK_SIZE = 64 * 1024
DEFAULT_ALBUM_ART_CHUNK_SIZE = 512 * 1024
DEFAULT_MAX_RESUME_ATTEMPTS = 3
DEFAULT_READ_BLOCK_SIZE = 256 * 1024


@dataclass(frozen=True)
class ServerConfig:
    """
    Remote service location.

    Attributes:
        url: Base URL of the service, e.g. https://host:3005.
             The call channel uses the ws:// or wss:// form of it,
             the bulk channel posts to {url}/api/upload/songs.
    """
    url: str

    @property
    def websocket_url(self) -> str:
        """Return the WebSocket form of the service URL."""
        if self.url.startswith("https://"):
            return "wss://" + self.url[len("https://"):]
        if self.url.startswith("http://"):
            return "ws://" + self.url[len("http://"):]
        return self.url


@dataclass(frozen=True)
class AuthConfig:
    """
    Bearer credential configuration.

    Attributes:
        token: The bearer token, or None when not available.
               Resolved at load time from the file or the environment.
    """
    token: str | None


@dataclass(frozen=True)
class ConnectionConfig:
    """
    Reconnection policy.

    Attributes:
        reconnect_delay: Seconds between reconnection attempts (fixed).
        max_reconnect_attempts: Attempts before the client goes Offline.
    """
    reconnect_delay: float
    max_reconnect_attempts: int


@dataclass(frozen=True)
class RpcConfig:
    """
    Call timeouts in seconds.

    Attributes:
        timeout: Budget for regular calls.
        transfer_timeout: Budget for transfer-class calls (event names
                          containing "upload").
    """
    timeout: float
    transfer_timeout: float


@dataclass(frozen=True)
class CacheConfig:
    """
    Local store configuration.

    Attributes:
        directory: Directory holding the SQLite store and log files.
        snapshot_ttl: Default max age (seconds) for cached API responses.
        playback_url_ttl: Lifetime (seconds) of cached playback URLs.
    """
    directory: Path
    snapshot_ttl: int
    playback_url_ttl: int


@dataclass(frozen=True)
class UploadConfig:
    """
    Upload behavior configuration.

    Attributes:
        avatar_chunk_size: Chunk size in bytes for avatar images.
        album_art_chunk_size: Chunk size in bytes for album art.
        max_resume_attempts: Resumptions allowed per paused file.
        read_block_size: Block size used when streaming files to the
                         bulk channel (progress granularity).
    """
    avatar_chunk_size: int
    album_art_chunk_size: int
    max_resume_attempts: int
    read_block_size: int


@dataclass(frozen=True)
class Config:
    """
    Complete client configuration.

    Created by load_config() and treated as immutable.

    Example:
        config = load_config()
        print(f"Talking to: {config.server.url}")
        print(f"Reconnect every {config.connection.reconnect_delay}s")
    """
    server: ServerConfig
    auth: AuthConfig
    connection: ConnectionConfig
    rpc: RpcConfig
    cache: CacheConfig
    upload: UploadConfig


def default_config(server_url: str, token: str | None = None, cache_dir: Path | None = None) -> Config:
    """
    Build a Config with every default applied.

    Used by tests and by callers that embed the client without a
    config.yaml file.
    """
    return Config(
        server=ServerConfig(url=server_url.rstrip("/")),
        auth=AuthConfig(token=token),
        connection=ConnectionConfig(
            reconnect_delay=DEFAULT_RECONNECT_DELAY,
            max_reconnect_attempts=DEFAULT_MAX_RECONNECT_ATTEMPTS,
        ),
        rpc=RpcConfig(timeout=DEFAULT_CALL_TIMEOUT, transfer_timeout=DEFAULT_TRANSFER_TIMEOUT),
        cache=CacheConfig(
            directory=cache_dir or Path(DEFAULT_CACHE_DIRECTORY).expanduser(),
            snapshot_ttl=DEFAULT_SNAPSHOT_TTL,
            playback_url_ttl=DEFAULT_PLAYBACK_URL_TTL,
        ),
        upload=UploadConfig(
            avatar_chunk_size=DEFAULT_AVATAR_CHUNK_SIZE,
            album_art_chunk_size=DEFAULT_ALBUM_ART_CHUNK_SIZE,
            max_resume_attempts=DEFAULT_MAX_RESUME_ATTEMPTS,
            read_block_size=DEFAULT_READ_BLOCK_SIZE,
        ),
    )


def load_config(config_path: Path | None = None) -> Config:
    """
    Load and validate configuration from config.yaml.

    Args:
        config_path: Optional explicit path to config file.
                     If None, looks for config.yaml in current working directory.

    Returns:
        Config: A frozen dataclass containing all configuration values.

    Raises:
        ConfigError: If the config file is not found, has invalid YAML syntax,
                     is missing required fields, or contains invalid values.

    Behavior:
        1. Load .env from the working directory (token may live there)
        2. Locate config file (explicit path or CWD/config.yaml)
        3. Read and parse YAML content
        4. Validate structure (the server section is required)
        5. Parse each section, applying defaults for missing ones
        6. Create and return frozen Config object
    """
    load_dotenv()

    if config_path is None:
        config_path = Path.cwd() / CONFIG_FILENAME

    if not config_path.exists():
        raise ConfigError(
            f"Configuration file not found: {config_path}",
            details={"file_path": str(config_path)}
        )

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            content = f.read()
    except IOError as e:
        raise ConfigError(
            f"Failed to read configuration file: {e}",
            details={"file_path": str(config_path), "original_error": str(e)}
        ) from e

    try:
        raw_config = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Invalid YAML syntax in configuration file: {e}",
            details={"file_path": str(config_path), "original_error": str(e)}
        ) from e

    if not isinstance(raw_config, dict):
        raise ConfigError(
            "Configuration file must contain a YAML dictionary",
            details={"file_path": str(config_path)}
        )

    _validate_config(raw_config)

    return Config(
        server=_parse_server_config(raw_config["server"]),
        auth=_parse_auth_config(_optional_section(raw_config, "auth")),
        connection=_parse_connection_config(_optional_section(raw_config, "connection")),
        rpc=_parse_rpc_config(_optional_section(raw_config, "rpc")),
        cache=_parse_cache_config(_optional_section(raw_config, "cache")),
        upload=_parse_upload_config(_optional_section(raw_config, "upload")),
    )


def _validate_config(raw_config: dict[str, Any]) -> None:
    """
    Validate the raw configuration dictionary structure.

    Raises:
        ConfigError: If the server section is missing or not a dictionary.
    """
    if "server" not in raw_config:
        raise ConfigError(
            "Missing required section: 'server'",
            details={"missing_section": "server"}
        )

    if not isinstance(raw_config["server"], dict):
        raise ConfigError(
            "Section 'server' must be a dictionary",
            details={"section": "server"}
        )


def _optional_section(raw_config: dict[str, Any], name: str) -> dict[str, Any]:
    section = raw_config.get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigError(
            f"Section '{name}' must be a dictionary",
            details={"section": name}
        )
    return section


def _parse_server_config(server_section: dict[str, Any]) -> ServerConfig:
    url = server_section.get("url", "")

    if not isinstance(url, str) or not url.strip():
        raise ConfigError(
            "'server.url' must be a non-empty string",
            details={"field": "server.url"}
        )

    url = url.strip().rstrip("/")
    if not url.startswith(("http://", "https://", "ws://", "wss://")):
        raise ConfigError(
            "'server.url' must start with http://, https://, ws:// or wss://",
            details={"field": "server.url", "value": url}
        )

    return ServerConfig(url=url)


def _parse_auth_config(auth_section: dict[str, Any]) -> AuthConfig:
    """
    Resolve the bearer token.

    An explicit 'token' wins; otherwise the variable named by 'token_env'
    (default CHILLFI_TOKEN) is read from the environment. A missing token
    is not a configuration error: the connection manager reports it as an
    authentication failure when connecting.
    """
    token = auth_section.get("token")
    if token is not None and (not isinstance(token, str) or not token.strip()):
        raise ConfigError(
            "'auth.token' must be a non-empty string or null",
            details={"field": "auth.token"}
        )

    token_env = auth_section.get("token_env", DEFAULT_TOKEN_ENV)
    if not isinstance(token_env, str) or not token_env.strip():
        raise ConfigError(
            "'auth.token_env' must be a non-empty string",
            details={"field": "auth.token_env"}
        )

    if token is None:
        token = os.environ.get(token_env.strip()) or None

    return AuthConfig(token=token.strip() if token else None)


def _parse_connection_config(section: dict[str, Any]) -> ConnectionConfig:
    return ConnectionConfig(
        reconnect_delay=_non_negative_number(
            section, "reconnect_delay", DEFAULT_RECONNECT_DELAY, "connection"
        ),
        max_reconnect_attempts=_positive_int(
            section, "max_reconnect_attempts", DEFAULT_MAX_RECONNECT_ATTEMPTS, "connection"
        ),
    )


def _parse_rpc_config(section: dict[str, Any]) -> RpcConfig:
    timeout = _non_negative_number(section, "timeout", DEFAULT_CALL_TIMEOUT, "rpc")
    transfer_timeout = _non_negative_number(
        section, "transfer_timeout", DEFAULT_TRANSFER_TIMEOUT, "rpc"
    )
    if timeout == 0 or transfer_timeout == 0:
        raise ConfigError(
            "Call timeouts must be greater than zero",
            details={"field": "rpc", "timeout": timeout, "transfer_timeout": transfer_timeout}
        )
    return RpcConfig(timeout=timeout, transfer_timeout=transfer_timeout)


def _parse_cache_config(section: dict[str, Any]) -> CacheConfig:
    directory = section.get("directory", DEFAULT_CACHE_DIRECTORY)
    if not isinstance(directory, str) or not directory.strip():
        raise ConfigError(
            "'cache.directory' must be a non-empty string",
            details={"field": "cache.directory"}
        )

    return CacheConfig(
        directory=Path(directory.strip()).expanduser().resolve(),
        snapshot_ttl=_positive_int(section, "snapshot_ttl", DEFAULT_SNAPSHOT_TTL, "cache"),
        playback_url_ttl=_positive_int(
            section, "playback_url_ttl", DEFAULT_PLAYBACK_URL_TTL, "cache"
        ),
    )


def _parse_upload_config(section: dict[str, Any]) -> UploadConfig:
    return UploadConfig(
        avatar_chunk_size=_positive_int(
            section, "avatar_chunk_size", DEFAULT_AVATAR_CHUNK_SIZE, "upload"
        ),
        album_art_chunk_size=_positive_int(
            section, "album_art_chunk_size", DEFAULT_ALBUM_ART_CHUNK_SIZE, "upload"
        ),
        max_resume_attempts=_positive_int(
            section, "max_resume_attempts", DEFAULT_MAX_RESUME_ATTEMPTS, "upload"
        ),
        read_block_size=_positive_int(
            section, "read_block_size", DEFAULT_READ_BLOCK_SIZE, "upload"
        ),
    )


def _positive_int(section: dict[str, Any], key: str, default: int, section_name: str) -> int:
    value = section.get(key)
    if value is None:
        return default
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(
            f"'{section_name}.{key}' must be a positive integer",
            details={"field": f"{section_name}.{key}", "value": value}
        )
    return value


def _non_negative_number(
    section: dict[str, Any], key: str, default: float, section_name: str
) -> float:
    value = section.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ConfigError(
            f"'{section_name}.{key}' must be a non-negative number",
            details={"field": f"{section_name}.{key}", "value": value}
        )
    return float(value)
