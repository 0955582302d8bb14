"""
Pydantic schemas for the integration layer.

Persisted records (Integration, Connection, IntegrationLogEntry), transient
token value objects, OAuth state, and the typed per-provider configuration
models that are validated once when a config is written.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════════
# Enumerations
# ═══════════════════════════════════════════════════════════════════════════════


class ProviderCategory(str, Enum):
    COMMUNICATION = "communication"
    TICKETING = "ticketing"
    PRODUCTIVITY = "productivity"
    DOCS = "docs"


class ChannelKind(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    DIRECT = "direct"


class ChangeKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class LogStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    PENDING = "pending"


class IntegrationStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"
    EXPIRED = "expired"


# ═══════════════════════════════════════════════════════════════════════════════
# Tokens
# ═══════════════════════════════════════════════════════════════════════════════


class TokenData(BaseModel):
    """Plaintext credentials. Lives in memory only."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def __repr__(self) -> str:
        return f"TokenData(expires_at={self.expires_at!r}, scope={self.scope!r})"

    __str__ = __repr__


class EncryptedTokenData(BaseModel):
    """
    Ciphertext form of TokenData.

    Each ciphertext embeds its own IV; ``iv`` is a legacy field that is
    always empty and kept only so older serialized payloads still parse.
    """

    encrypted_access_token: str
    encrypted_refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    iv: str = ""


class TokenValidationResult(BaseModel):
    is_valid: bool
    is_expired: bool
    expires_in: Optional[int] = None  # seconds until expiry
    needs_refresh: bool


class TokenStorageResult(BaseModel):
    success: bool
    error: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════════════
# OAuth
# ═══════════════════════════════════════════════════════════════════════════════


class OAuthState(BaseModel):
    """Decoded state payload. Caller extras are kept as extra fields."""

    model_config = ConfigDict(extra="allow")

    tenant_id: str
    provider_name: str
    redirect_url: Optional[str] = None
    timestamp: int  # epoch milliseconds
    nonce: str

    @property
    def extra(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class OAuthCallbackParams(BaseModel):
    """Query parameters a provider redirects back with."""

    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None
    oauth_token: Optional[str] = None
    oauth_verifier: Optional[str] = None
    tenant_id: Optional[str] = None
    # Filled in by IntegrationManager once the state has been validated.
    state_data: Optional[OAuthState] = None


class OAuthInitiation(BaseModel):
    auth_url: str
    state: str


# ═══════════════════════════════════════════════════════════════════════════════
# Channels & messages
# ═══════════════════════════════════════════════════════════════════════════════


class Channel(BaseModel):
    """A postable destination: Slack channel, Jira project, Trello list, …"""

    id: str
    name: str
    kind: ChannelKind = ChannelKind.PUBLIC
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MessageData(BaseModel):
    title: str
    content: str = ""
    author: str
    record_url: str
    change_kind: ChangeKind


class RecordSnapshot(BaseModel):
    """What the integration layer needs to know about a tenant record."""

    id: str
    tenant_id: str
    title: str
    content: str = ""
    url: Optional[str] = None


class ActorSnapshot(BaseModel):
    id: str
    name: Optional[str] = None
    username: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.username or self.id


# ═══════════════════════════════════════════════════════════════════════════════
# Persisted records
# ═══════════════════════════════════════════════════════════════════════════════

ConfigModelT = TypeVar("ConfigModelT", bound=BaseModel)


class Integration(BaseModel):
    """A tenant's authorized link to one provider. Tokens are ciphertext."""

    id: str
    tenant_id: str
    provider_name: str
    category: ProviderCategory
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    last_sync_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def typed_config(self, model: Type[ConfigModelT]) -> ConfigModelT:
        return model.model_validate(self.config)

    def encrypted_tokens(self) -> Optional[EncryptedTokenData]:
        if not self.access_token:
            return None
        return EncryptedTokenData(
            encrypted_access_token=self.access_token,
            encrypted_refresh_token=self.refresh_token,
            expires_at=self.token_expires_at,
            scope=self.scope,
        )


class Connection(BaseModel):
    """Link from one record to one destination inside an Integration."""

    id: str
    record_id: str
    integration_id: str
    external_id: str
    config: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    last_posted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def typed_config(self, model: Type[ConfigModelT]) -> ConfigModelT:
        return model.model_validate(self.config)


class IntegrationLogEntry(BaseModel):
    action: str
    status: LogStatus
    request_data: Optional[Dict[str, Any]] = None
    response_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class ConnectRecordParams(BaseModel):
    record_id: str
    integration_id: str
    external_id: str
    config: Dict[str, Any] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════════════════════
# Reports
# ═══════════════════════════════════════════════════════════════════════════════


class FanOutResult(BaseModel):
    connections: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)


class ConnectionValidationSummary(BaseModel):
    valid: int = 0
    invalid: int = 0
    errors: List[str] = Field(default_factory=list)


class IntegrationStatusReport(BaseModel):
    status: IntegrationStatus
    last_sync: Optional[datetime] = None
    connection_count: int = 0
    recent_errors: List[IntegrationLogEntry] = Field(default_factory=list)


class IntegrationStats(BaseModel):
    total_connections: int = 0
    active_connections: int = 0
    recent_activity: int = 0
    last_activity: Optional[datetime] = None
    error_count: int = 0


# ═══════════════════════════════════════════════════════════════════════════════
# Typed provider configuration
# ═══════════════════════════════════════════════════════════════════════════════


class ProviderConfigBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    scope: Optional[str] = None


class SlackConfig(ProviderConfigBase):
    team_id: str = Field(description="Slack team ID")
    team_name: str = Field(description="Slack team name")
    bot_user_id: Optional[str] = Field(default=None, description="Bot user ID")


class JiraUser(BaseModel):
    account_id: str
    display_name: str
    email_address: Optional[str] = None


class JiraConfig(ProviderConfigBase):
    instance_url: str = Field(
        title="Jira Instance URL",
        description="Your Jira Cloud instance URL (e.g., https://yourcompany.atlassian.net)",
        pattern=r"^https://[a-zA-Z0-9-]+\.atlassian\.net/?$",
    )
    cloud_id: str = Field(description="Atlassian cloud resource ID")
    user: Optional[JiraUser] = None
    use_bot_user: bool = False
    bot_user: Optional[JiraUser] = None
    default_issue_type: str = Field(
        default="Task",
        title="Default Issue Type",
        description="Default issue type for created issues (e.g., Task, Story, Bug)",
    )
    include_record_content: bool = Field(
        default=True,
        title="Include Record Content",
        description="Include the full record content in the issue description",
    )


class GitHubUser(BaseModel):
    id: int
    login: str
    name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None


class GitHubConfig(ProviderConfigBase):
    user: GitHubUser


class TrelloUser(BaseModel):
    id: str
    username: str
    full_name: str = ""
    email: Optional[str] = None
    avatar_url: Optional[str] = None


class TrelloBoard(BaseModel):
    id: str
    name: str
    url: str = ""


class TrelloConfig(ProviderConfigBase):
    user: TrelloUser
    boards: List[TrelloBoard] = Field(default_factory=list)


class NotionUser(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None


class NotionConfig(ProviderConfigBase):
    workspace_id: str
    workspace_name: str = ""
    bot_id: str = ""
    user: Optional[NotionUser] = None


class GitLabUser(BaseModel):
    id: int
    username: str
    name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None


class GitLabConfig(ProviderConfigBase):
    instance_url: str = Field(
        default="https://gitlab.com",
        title="GitLab Instance URL",
        description="gitlab.com or the base URL of a self-managed instance",
        pattern=r"^https://[^\s/?#]+(/[^\s?#]*)?$",
    )
    user: GitLabUser


class ConnectionConfigBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    channel_name: str = ""
    channel_kind: ChannelKind = ChannelKind.PUBLIC
    channel_metadata: Dict[str, Any] = Field(default_factory=dict)


class SlackConnectionConfig(ConnectionConfigBase):
    post_format: Literal["blocks", "text"] = "blocks"
    include_content: bool = True


class JiraConnectionConfig(ConnectionConfigBase):
    default_issue_type: Optional[str] = None
    include_record_content: Optional[bool] = None
    reporter_account_id: Optional[str] = None


class GitHubConnectionConfig(ConnectionConfigBase):
    include_record_content: bool = True
    default_labels: List[str] = Field(default_factory=list)
    default_assignees: List[str] = Field(default_factory=list)
    default_milestone: Optional[int] = None


class TrelloConnectionConfig(ConnectionConfigBase):
    list_id: str = ""
    include_record_content: bool = True
    default_labels: List[str] = Field(default_factory=list)
    default_members: List[str] = Field(default_factory=list)


class NotionConnectionConfig(ConnectionConfigBase):
    title_property: str = "Name"
    include_record_content: bool = True
    # Extra page properties keyed by database property name.
    default_properties: Dict[str, Any] = Field(default_factory=dict)


class GitLabConnectionConfig(ConnectionConfigBase):
    include_record_content: bool = True
    default_labels: List[str] = Field(default_factory=list)
    default_milestone_id: Optional[int] = None
    default_assignee_id: Optional[int] = None
