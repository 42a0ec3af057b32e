"""Pydantic models for the per-repository ``deploykit.yaml`` file.

Every section is optional, an absent file behaves like an empty one.
Example:

    overrides:
      namespace: shop
      appName: shop-api
    permissionCheck: auto
    config:
      includeSecret: true
    notify:
      chatId: "-100123"
      silent: true
    deploy:
      container: api
    skip:
      push: true
"""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

from .config import PermissionCheckMode
from .identity import IdentityOverrides


class SettingsSection(BaseModel):
    """Base for all sections: unknown keys are ignored, aliases accepted."""

    model_config = {"extra": "ignore", "populate_by_name": True}


class OverridesSettings(SettingsSection):
    """Explicit identity values. Each one bypasses its computed default."""

    repo_owner: str | None = Field(None, alias="repoOwner")
    repo_name: str | None = Field(None, alias="repoName")
    repo_branch: str | None = Field(None, alias="repoBranch")
    sanitized_branch: str | None = Field(None, alias="sanitizedBranch")
    namespace: str | None = None
    deployment: str | None = None
    app_name: str | None = Field(None, alias="appName")
    registry: str | None = None
    commit_hash: str | None = Field(None, alias="commitHash")

    def to_identity_overrides(self) -> IdentityOverrides:
        return IdentityOverrides.from_dict(self.model_dump())


class LayerSettings(SettingsSection):
    """Config layer names."""

    general: Annotated[str, Field(min_length=1)] = "general"
    configmap: str | None = None
    secret: str | None = None
    include_secret: bool = Field(False, alias="includeSecret")
    destinations: dict[str, str] = Field(default_factory=dict)


class NotifySettings(SettingsSection):
    """Telegram overrides and delivery behaviour."""

    bot_token: str | None = Field(None, alias="botToken")
    chat_id: str | None = Field(None, alias="chatId")
    thread_id: str | None = Field(None, alias="threadId")
    parse_mode: str = Field("Markdown", alias="parseMode")
    silent: bool = False
    fail_on_error: bool = Field(False, alias="failOnError")

    @field_validator("chat_id", "thread_id", mode="before")
    @classmethod
    def coerce_numeric_id(cls, v: Any) -> Any:
        # YAML reads -100123 as an int
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("parse_mode")
    @classmethod
    def validate_parse_mode(cls, v: str) -> str:
        valid_modes = {"Markdown", "MarkdownV2", "HTML"}
        if v not in valid_modes:
            raise ValueError(f"parseMode must be one of {sorted(valid_modes)}")
        return v


class BuildSettings(SettingsSection):
    dockerfile: Annotated[str, Field(min_length=1)] = "Dockerfile"
    context: Annotated[str, Field(min_length=1)] = "."


class DeploySettings(SettingsSection):
    container: Annotated[str, Field(min_length=1)] = "*"
    swarm_context: str = Field("docker-swarm", alias="swarmContext", min_length=1)
    ingress_lookup: bool = Field(True, alias="ingressLookup")


class SkipSettings(SettingsSection):
    """Steps a repository opts out of."""

    config: bool = False
    build: bool = False
    push: bool = False
    deploy: bool = False
    notification: bool = False


class PipelineSettings(SettingsSection):
    """Root of ``deploykit.yaml``."""

    overrides: OverridesSettings = Field(default_factory=OverridesSettings)
    permission_check: PermissionCheckMode | None = Field(None, alias="permissionCheck")
    config: LayerSettings = Field(default_factory=LayerSettings)
    notify: NotifySettings = Field(default_factory=NotifySettings)
    build: BuildSettings = Field(default_factory=BuildSettings)
    deploy: DeploySettings = Field(default_factory=DeploySettings)
    skip: SkipSettings = Field(default_factory=SkipSettings)

    @field_validator("permission_check", mode="before")
    @classmethod
    def normalize_permission_check(cls, v: Any) -> Any:
        # YAML turns bare true/false into booleans
        if isinstance(v, bool):
            return "true" if v else "false"
        if isinstance(v, str):
            return v.lower()
        return v
