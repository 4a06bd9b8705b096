"""Settings via pydantic-settings with OFFERBOT_ env prefix.

DB connection fields use validation_alias to read from the same unprefixed
env vars (DB_PASSWORD, DB_PORT, etc.) that docker-compose uses, so a single
.env file drives both the container and the Python app.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="OFFERBOT_", env_file=".env")

    # DB connection -- unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("offerbot", validation_alias="DB_USER")
    db_password: str = Field("offerbot_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("offerbot", validation_alias="DB_NAME")

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")

    # Event Bus
    event_bus_enabled: bool = True

    # LLM
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 8000

    # Extended thinking
    thinking_enabled: bool = True
    thinking_budget: int = 5000  # budget_tokens (min 1024)

    # Orchestration loop
    max_rounds: int = 10  # Max tool rounds per loop invocation
    round_timeout: float = 300.0  # seconds, covers one request + stream
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Tool webhooks (n8n MCP server)
    tool_webhook_key: str = "n8n_mcp_server"
    tool_webhook_url: str = Field("", validation_alias="N8N_MCP_SERVER_URL")
    webhook_cache_ttl: float = 60.0  # seconds
    tool_timeout: float = 30.0  # seconds

    # Conversations
    default_conversation_title: str = "Naujas pokalbis"
    artifact_title: str = "Komercinis pasiūlymas"

    @model_validator(mode="after")
    def _validate_thinking(self) -> "Settings":
        if self.thinking_enabled:
            if self.thinking_budget < 1024:
                raise ValueError("thinking_budget must be >= 1024 (API minimum)")
            if self.thinking_budget >= self.max_tokens:
                raise ValueError(
                    f"thinking_budget ({self.thinking_budget}) must be < "
                    f"max_tokens ({self.max_tokens}). Increase max_tokens."
                )
        return self

    @property
    def db_url(self) -> str:
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
