import json
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import AliasChoices, Field, computed_field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_LOOPBACK_HOSTS = frozenset({"127.0.0.1", "::1", "localhost"})


class Settings(BaseSettings):
    """Application configuration sourced from environment variables."""

    model_config = SettingsConfigDict(
        env_file=(".env",),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    app_env: Literal["development", "production", "test"] = "development"
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"
    log_json: bool = False
    log_file: str | None = None
    kube_context: str | None = None
    kube_config_path: str | None = Field(
        default=None,
        validation_alias=AliasChoices("KUBE_CONFIG_PATH", "KUBECONFIG", "kube_config_path"),
    )
    # Authorization
    skip_authorization: bool = Field(
        default=False,
        description="Run every operation with the server's own client, bypassing per-caller access reviews",
    )
    global_service_account_namespaces: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Namespaces always searched, in order, for ServiceAccounts a caller may act as",
    )
    rest_mapping: Literal["guess", "discovery"] = Field(
        default="guess",
        description="How kinds are mapped to plural resource names",
    )
    access_review_timeout_seconds: float = Field(default=10.0, gt=0)

    @field_validator("global_service_account_namespaces", mode="before")
    @classmethod
    def _split_namespaces(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.strip()
            if value.startswith("["):
                return json.loads(value)
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @model_validator(mode="after")
    def _guard_skip_authorization(self) -> "Settings":
        # The bypass is only for a server a user runs locally with their own kubeconfig.
        if self.skip_authorization and self.host not in _LOOPBACK_HOSTS:
            raise ValueError(
                "skip_authorization may only be enabled when the server listens on a loopback address"
            )
        return self

    @computed_field
    @property
    def is_debug(self) -> bool:
        return self.app_env == "development"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]
