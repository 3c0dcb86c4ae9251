"""Configuration management utilities."""

from pathlib import Path
from typing import List, Optional, Union

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from meshcall.utils.logger import get_logger

logger = get_logger(__name__)


class IceServerConfig(BaseModel):
    """STUN/TURN server entry."""
    urls: Union[str, List[str]]
    username: Optional[str] = None
    credential: Optional[str] = None


def _default_ice_servers() -> List[IceServerConfig]:
    return [
        IceServerConfig(urls="stun:stun.l.google.com:19302"),
        IceServerConfig(urls="stun:stun1.l.google.com:19302"),
        IceServerConfig(urls="stun:stun2.l.google.com:19302"),
        IceServerConfig(
            urls="turn:openrelay.metered.ca:80",
            username="openrelayproject",
            credential="openrelayproject",
        ),
        IceServerConfig(
            urls="turn:openrelay.metered.ca:443",
            username="openrelayproject",
            credential="openrelayproject",
        ),
        IceServerConfig(
            urls="turn:openrelay.metered.ca:443?transport=tcp",
            username="openrelayproject",
            credential="openrelayproject",
        ),
    ]


class ServerConfig(BaseModel):
    """Relay server configuration."""
    host: str = Field("0.0.0.0", description="Bind address")
    port: int = Field(3001, description="Listen port")
    ping_interval: Optional[float] = Field(20.0, description="Keepalive ping interval in seconds")
    ping_timeout: Optional[float] = Field(20.0, description="Keepalive pong timeout in seconds")
    max_message_size: int = Field(256 * 1024, description="Largest accepted frame in bytes")
    health_path: str = Field("/", description="Path answered with a plain HTTP health check")


class MeshConfig(BaseModel):
    """Client-side negotiation configuration."""
    ice_servers: List[IceServerConfig] = Field(default_factory=_default_ice_servers)
    connect_timeout: Optional[float] = Field(
        None, description="Seconds a peer may stay negotiating before it counts as failed"
    )
    receive_audio: bool = Field(True, description="Request remote audio in offers")
    receive_video: bool = Field(True, description="Request remote video in offers")
    ping_interval: Optional[float] = Field(20.0, description="Keepalive ping interval in seconds")
    ping_timeout: Optional[float] = Field(20.0, description="Keepalive pong timeout in seconds")


class MediaConfig(BaseModel):
    """Local media source configuration."""
    source: Optional[str] = Field(None, description="File, URL or capture device")
    format: Optional[str] = Field(None, description="Input format, e.g. v4l2, avfoundation")
    options: dict = Field(default_factory=dict, description="Options passed to the media player")


class Config(BaseModel):
    """Main application configuration."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    mesh: MeshConfig = Field(default_factory=MeshConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)


class Settings(BaseSettings):
    """Environment-based settings."""
    model_config = SettingsConfigDict(
        env_prefix="MESHCALL_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 3001
    signaling_url: str = "ws://localhost:3001"
    config: Optional[Path] = None

    log_level: str = "INFO"
    log_file: Optional[Path] = None
    library_log_level: str = "WARNING"


def load_config(config_path: Optional[Union[Path, str]] = None) -> Config:
    """Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        Configuration object
    """
    if config_path is None:
        return Config()

    config_path = Path(config_path)
    if not config_path.exists():
        logger.warning(f"Config file not found: {config_path}, using default config")
        return Config()

    with open(config_path, "r") as f:
        config_dict = yaml.safe_load(f) or {}

    return Config(**config_dict)


def save_config(config: Config, output_path: Union[Path, str]) -> None:
    """Save configuration to YAML file.

    Args:
        config: Configuration object
        output_path: Output file path
    """
    config_dict = config.model_dump()

    with open(output_path, "w") as f:
        yaml.dump(config_dict, f, default_flow_style=False, sort_keys=False)


settings = Settings()
