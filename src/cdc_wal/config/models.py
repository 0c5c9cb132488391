"""Pydantic configuration models for the WAL reader."""

from __future__ import annotations

import re
from enum import StrEnum
from pathlib import Path
from typing import Annotated, Self

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

_QUALIFIED_NAME = re.compile(r"^[a-zA-Z_]\w*\.[a-zA-Z_]\w*$")
_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")


class SourceConfig(BaseModel):
    """Connection settings for the PostgreSQL source database."""

    host: str = "localhost"
    port: int = Field(default=5432, ge=1, le=65535)
    database: str
    username: str = "cdc_user"
    password: SecretStr = SecretStr("cdc_password")
    # Schema-qualified table names (e.g. "public.customers").  Empty means
    # every table in the publication.
    tables: list[str] = Field(default_factory=list)

    @field_validator("tables")
    @classmethod
    def validate_qualified_names(cls, v: list[str]) -> list[str]:
        """Validate that table names are schema-qualified."""
        for table in v:
            if not _QUALIFIED_NAME.match(table):
                msg = (
                    f"Table '{table}' must be schema-qualified "
                    f"(e.g. 'public.customers')"
                )
                raise ValueError(msg)
        return v

    def dsn(self) -> str:
        return (
            f"host={self.host} port={self.port} "
            f"dbname={self.database} user={self.username} "
            f"password={self.password.get_secret_value()}"
        )


class WalReaderConfig(BaseModel):
    """Replication slot and streaming settings."""

    publication_name: str = "cdc_publication"
    slot_name: str = "cdc_slot"
    status_interval_seconds: float = Field(default=10.0, gt=0)
    batch_size: int = Field(default=100, ge=1)
    batch_timeout_seconds: float = Field(default=1.0, gt=0)
    # 0 means retry forever
    max_retries: int = Field(default=0, ge=0)
    skip_truncate: bool = False
    # pgoutput only streams logical decoding messages when asked to
    messages: bool = False

    @field_validator("publication_name", "slot_name")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        """Slot and publication names are interpolated into replication commands."""
        if not _IDENTIFIER.match(v):
            msg = (
                f"'{v}' is not a valid slot/publication name "
                "(lower-case letters, digits and underscores)"
            )
            raise ValueError(msg)
        return v


class OffsetStoreKind(StrEnum):
    """Supported offset stores."""

    MEMORY = "memory"
    FILE = "file"


class OffsetStoreConfig(BaseModel):
    """Where committed positions are persisted."""

    kind: OffsetStoreKind = OffsetStoreKind.MEMORY
    path: Path | None = None

    @model_validator(mode="after")
    def check_path(self) -> Self:
        if self.kind == OffsetStoreKind.FILE and self.path is None:
            msg = "path is required when offset store kind is 'file'"
            raise ValueError(msg)
        return self


class LogLevel(StrEnum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class LoggingConfig(BaseModel):
    """structlog output settings."""

    level: LogLevel = LogLevel.INFO
    json_output: bool = Field(default=False, alias="json")

    model_config = {"populate_by_name": True}


TopicPrefix = Annotated[str, Field(pattern=r"^[a-zA-Z][a-zA-Z0-9._-]*$")]


class ReaderConfig(BaseModel, extra="forbid"):
    """Top-level configuration for one WAL reader."""

    reader_id: str
    topic_prefix: TopicPrefix = "cdc"
    source: SourceConfig
    wal_reader: WalReaderConfig = WalReaderConfig()
    offsets: OffsetStoreConfig = OffsetStoreConfig()
    logging: LoggingConfig = LoggingConfig()
