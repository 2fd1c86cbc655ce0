"""Configuration schema using Pydantic."""

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_ACCOUNT_ID = "default"
DEFAULT_CARD_TEMPLATE_ID = "382e4302-551d-4880-bf29-a30acfab2e71.schema"


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConnectionConfig(Base):
    """Stream reconnection tuning. Delays are in seconds."""

    max_attempts: int = 10
    initial_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 0.3


class DingTalkAccountConfig(Base):
    """DingTalk account configuration using Stream mode."""

    name: str = ""
    enabled: bool = True
    client_id: str = ""  # AppKey
    client_secret: str = ""  # AppSecret
    robot_code: str = ""
    corp_id: str = ""
    agent_id: str | int | None = None
    dm_policy: Literal["open", "pairing", "allowlist"] = "open"
    group_policy: Literal["open", "allowlist"] = "open"
    allow_from: list[str] = Field(default_factory=list)
    show_thinking: bool = True
    debug: bool = False
    message_type: Literal["text", "markdown", "card"] = "markdown"
    card_template_id: str = DEFAULT_CARD_TEMPLATE_ID
    card_template_key: str = "content"
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def robot_identity(self) -> str:
        """Robot code used for sends and dedup scoping, falling back to the client id."""
        return self.robot_code or self.client_id


class DingTalkConfig(DingTalkAccountConfig):
    """Top-level DingTalk block: a single account, or several under ``accounts``."""

    accounts: dict[str, DingTalkAccountConfig] = Field(default_factory=dict)


class ChannelsConfig(Base):
    dingtalk: DingTalkConfig = Field(default_factory=DingTalkConfig)


class SessionConfig(Base):
    store: str = ""  # empty means <data dir>/sessions


@dataclass
class ResolvedAccount:
    """An account id paired with its effective configuration."""

    account_id: str
    config: DingTalkAccountConfig
    enabled: bool


class Config(Base):
    """Root configuration for dingbot."""

    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)

    @property
    def session_store_path(self) -> Path | None:
        return Path(self.session.store).expanduser() if self.session.store else None

    def list_account_ids(self) -> list[str]:
        """List configured account ids; a bare top-level block counts as ``default``."""
        dt = self.channels.dingtalk
        if dt.accounts:
            return list(dt.accounts)
        return [DEFAULT_ACCOUNT_ID] if dt.is_configured else []

    def resolve_account(self, account_id: str | None = None) -> ResolvedAccount:
        """Pick the named account, or fall back to the top-level block."""
        dt = self.channels.dingtalk
        account_id = account_id or DEFAULT_ACCOUNT_ID
        account = dt.accounts.get(account_id)
        if account is not None:
            return ResolvedAccount(account_id=account_id, config=account, enabled=account.enabled)
        base = DingTalkAccountConfig.model_validate(dt.model_dump(exclude={"accounts"}))
        return ResolvedAccount(account_id=DEFAULT_ACCOUNT_ID, config=base, enabled=base.enabled)
