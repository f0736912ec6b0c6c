"""Settings via pydantic-settings with HIVE_ env prefix.

Provider credentials use validation_alias to read the same unprefixed
env vars (ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN) the Anthropic SDKs use,
so a single .env file works for every tool on the host.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="HIVE_", env_file=".env")

    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # LLM
    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 1024

    # Step loop
    max_steps: int = 50
    context_token_budget: int = 12_000  # in-run transcript sent to the model
    conversation_token_budget: int = 100_000  # stored per-session history
    streaming_enabled: bool = True
    strict_tool_calls: bool = True

    # Retry
    max_retry_attempts: int = 5
    rate_limit_backoff: float = 1.0  # seconds
    overloaded_backoff: float = 2.0  # seconds
    max_backoff_exponent: int = 5

    # Approvals
    approval_timeout: float = 0  # seconds, 0 = wait until decided

    # Tools
    tab_tool_prefix: str = "browser_tab_"

    # Sessions
    max_sessions: int = 100

    @model_validator(mode="after")
    def _validate_budgets(self) -> "Settings":
        if self.max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        if self.context_token_budget > self.conversation_token_budget:
            raise ValueError(
                f"context_token_budget ({self.context_token_budget}) must be <= "
                f"conversation_token_budget ({self.conversation_token_budget})"
            )
        return self
