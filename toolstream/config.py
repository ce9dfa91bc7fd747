"""Settings via pydantic-settings with TOOLSTREAM_ env prefix.

Credentials use validation_alias to read the unprefixed ANTHROPIC_*
variables, so the same environment works for other Anthropic tooling.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_PROMPT = (
    "You are an autonomous AI agent embedded in a host application. "
    "You DO things, you don't explain how to do them.\n\n"
    "CORE BEHAVIOR:\n"
    "- ALWAYS use your tools to accomplish tasks. NEVER just explain how to do something.\n"
    "- Execute multiple tools in sequence to complete complex tasks.\n"
    "- Be concise. Brief status updates only.\n"
    "- After making changes, verify they worked. If errors occur, fix them.\n\n"
    "Report completion briefly: \"Done. Created X and Y.\""
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TOOLSTREAM_", env_file=".env", extra="ignore")

    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")

    # LLM
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 8192
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # Direct API settings
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Session loop
    max_turns: int = 10  # Max tool use iterations per chat() call
    tick_interval: float = 0.05  # seconds between cooperative ticks
    confirm_timeout: float | None = None  # None = wait for the host forever

    # Built-in demo tools
    workspace_dir: str = "/tmp/toolstream-workspace"

    log_level: str = "info"

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if self.max_turns <= 0:
            raise ValueError("max_turns must be > 0")
        if self.tick_interval <= 0:
            raise ValueError("tick_interval must be > 0")
        return self

    @property
    def has_credentials(self) -> bool:
        return bool(self.anthropic_api_key or self.anthropic_auth_token)
