"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TelegramConfig(BaseModel):
    """Telegram channel configuration."""
    enabled: bool = False
    token: str = ""  # Bot token from @BotFather
    allow_from: list[str] = Field(default_factory=list)  # Allowed user IDs or usernames
    poll_timeout: int = 30
    proxy: str | None = None


class CLIChannelConfig(BaseModel):
    """Console channel, used for announcements when running locally."""
    enabled: bool = True


class ChannelsConfig(BaseModel):
    """Configuration for chat channels."""
    model_config = ConfigDict(extra="ignore")

    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    cli: CLIChannelConfig = Field(default_factory=CLIChannelConfig)


class AgentDefaults(BaseModel):
    """Default agent configuration."""
    workspace: str = "~/.nekobot/workspace"
    model: str = "gpt-4o-mini"
    max_tokens: int = 4096
    temperature: float = 0.7
    max_tool_iterations: int = 20
    instructions_file: str = "AGENTS.md"


class ProviderConfig(BaseModel):
    """OpenResponses-style endpoint configuration."""
    api_key: str = ""
    api_base: str = "https://api.openai.com/v1"
    timeout: float = 120.0
    extra_headers: dict[str, str] = Field(default_factory=dict)


class ExecToolConfig(BaseModel):
    """Shell exec tool configuration."""
    timeout: int = 60  # hard limit while exec waits in the foreground
    yield_seconds: float = Field(default=10.0, gt=0)  # then the command moves to the background
    background_timeout: int = Field(default=1800, ge=1)
    enable_blocklist: bool = True
    allowed_commands: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _yield_before_timeout(self) -> "ExecToolConfig":
        if self.yield_seconds >= self.timeout:
            raise ValueError("exec.yield_seconds must be shorter than exec.timeout")
        return self


class HttpToolConfig(BaseModel):
    """HTTP request tool configuration."""
    allowed_domains: list[str] = Field(default_factory=list)  # empty = any public host
    max_chars: int = 20000
    timeout: float = 30.0


class McpServerConfig(BaseModel):
    """One MCP server spawned over stdio."""
    enabled: bool = True
    command: str = ""
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    timeout: float | None = None  # per-call timeout, falls back to tools.timeout


class ToolsConfig(BaseModel):
    """Tools configuration."""
    model_config = ConfigDict(extra="ignore")

    timeout: float = 60.0
    restrict_to_workspace: bool = True
    exec: ExecToolConfig = Field(default_factory=ExecToolConfig)
    http: HttpToolConfig = Field(default_factory=HttpToolConfig)
    mcp_servers: dict[str, McpServerConfig] = Field(default_factory=dict)


class MemoryConfig(BaseModel):
    """Markdown memory configuration."""
    core_cap_chars: int = Field(default=2000, ge=100, le=100_000)
    search_max_results: int = Field(default=20, ge=1, le=1000)
    recall_enabled: bool = True


class CronConfig(BaseModel):
    """Scheduler configuration."""
    enabled: bool = True
    tick_seconds: float = Field(default=15.0, gt=0)
    job_timeout_seconds: float = Field(default=600.0, gt=0)
    shutdown_grace_seconds: float = Field(default=30.0, ge=0)


class ApiConfig(BaseModel):
    """HTTP API for sending messages to the agent from scripts."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 3000
    token: str = ""  # bearer token; empty = no auth (keep the API on localhost)


class SessionConfig(BaseModel):
    """Session manager configuration."""
    idle_timeout_minutes: int = Field(default=720, ge=1)
    max_history_messages: int = Field(default=40, ge=0)


class Config(BaseSettings):
    """Root configuration for nekobot."""
    agent: AgentDefaults = Field(default_factory=AgentDefaults)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    cron: CronConfig = Field(default_factory=CronConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    model_config = SettingsConfigDict(
        env_prefix="NEKOBOT_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @property
    def workspace_path(self) -> Path:
        """Get expanded workspace path."""
        return Path(self.agent.workspace).expanduser()
