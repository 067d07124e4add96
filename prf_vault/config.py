"""Configuration for the PRF vault server."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DATA_DIR = Path(__file__).resolve().parent / "data"
DEFAULT_DB_PATH = DATA_DIR / "vault.db"


class VaultSettings(BaseSettings):
    """Runtime settings, overridable through ``PRF_VAULT_*`` variables."""

    model_config = SettingsConfigDict(env_prefix="PRF_VAULT_")

    database_url: str = Field(
        default=f"sqlite:///{DEFAULT_DB_PATH}",
        description="SQLAlchemy connection string for users and credentials",
    )
    blob_dir: str = Field(
        default=str(DATA_DIR / "blobs"),
        description="Directory backing the ciphertext blob store",
    )
    rp_id: str = Field(default="localhost", description="Relying Party identifier")
    rp_name: str = Field(default="PRF Vault", description="Human readable RP name")
    origin: str = Field(
        default="http://localhost:5173",
        description="Expected origin for clientDataJSON validation",
    )
    ceremony_timeout_ms: int = Field(
        default=90_000,
        description="Timeout hint sent to the client with ceremony options",
    )
    require_user_verification: bool = Field(
        default=False,
        description="Reject ceremonies where the authenticator did not verify the user",
    )
    challenge_backend: Literal["memory", "database"] = Field(
        default="memory",
        description="Where pending challenges live; 'database' lets several processes share them",
    )
    challenge_ttl_seconds: int = Field(
        default=300,
        description="Seconds an issued challenge stays valid",
    )
    key_lifetime: Literal["ephemeral", "session"] = Field(
        default="ephemeral",
        description=(
            "'ephemeral' derives the blob key per request from the PRF output; "
            "'session' caches it in memory after authentication"
        ),
    )
    session_key_ttl_seconds: int = Field(
        default=600,
        description="How long a session-scoped derived key stays cached",
    )
