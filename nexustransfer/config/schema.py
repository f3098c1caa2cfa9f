"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings

from nexustransfer.lan.discovery import SERVICE_ID
from nexustransfer.lan.protocol import MAX_FRAME_SIZE
from nexustransfer.lan.transfer import CHUNK_SIZE, DEFAULT_DOWNLOAD_DIR


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DiscoveryConfig(Base):
    """UDP beacon discovery."""

    service_id: str = SERVICE_ID       # Beacons with another identifier are ignored
    udp_port: int = 9877               # Shared port for discovery beacons
    broadcast_address: str = "255.255.255.255"
    broadcast_interval: float = 2.0    # Seconds between announce beacons
    peer_timeout: float = 10.0         # Seconds of silence before a peer is pruned
    prune_interval: float | None = None  # Seconds between prune passes; None = peer_timeout / 2


class TransportConfig(Base):
    """TCP frame transport."""

    host: str = "0.0.0.0"
    tcp_port: int = 9876
    connect_timeout: float | None = None  # None = wait indefinitely
    read_timeout: float | None = None     # None = wait indefinitely
    max_frame_size: int = MAX_FRAME_SIZE


class TransferConfig(Base):
    """File transfer behaviour."""

    download_dir: str = DEFAULT_DOWNLOAD_DIR
    chunk_size: int = CHUNK_SIZE
    auto_accept: bool = True  # Accept every offer on receipt
    complete_grace: float = 5.0  # Seconds to wait for late chunks after FILE_COMPLETE

    @field_validator("chunk_size")
    @classmethod
    def chunk_size_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("chunk_size must be positive")
        return v

    @property
    def download_path(self) -> Path:
        return Path(self.download_dir).expanduser()


class Config(BaseSettings):
    """Root configuration for nexustransfer."""

    node_name: str = ""   # Display name; the shell prompts for one when empty
    node_id: str = ""     # UUID; a random one is generated per process when empty
    log_level: Literal["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR"] = "INFO"
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    transfer: TransferConfig = Field(default_factory=TransferConfig)

    @field_validator("node_id")
    @classmethod
    def node_id_is_uuid(cls, v: str) -> str:
        if not v:
            return v
        try:
            return str(UUID(v))
        except ValueError:
            raise ValueError(f"node_id must be a UUID, got {v!r}") from None

    model_config = ConfigDict(env_prefix="NEXUS_", env_nested_delimiter="__")
