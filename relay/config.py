"""Settings via pydantic-settings with RELAY_ env prefix.

Provider credentials and the bot token use validation_alias to read the
unprefixed env vars that the provider dashboards hand out, so one .env
file configures everything.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RELAY_", env_file=".env")

    log_level: str = "info"

    # Telegram
    telegram_bot_token: str = Field("", validation_alias="TELEGRAM_BOT_TOKEN")
    telegram_api_base: str = "https://api.telegram.org"
    allowed_users: str = ""  # Comma-separated Telegram user IDs, empty = allow all
    poll_timeout: int = 30

    # Streaming
    stream_throttle: float = 0.5  # seconds between edits of the live message
    stream_max_length: int = 3800  # live progress view cap
    message_max_length: int = 4000  # final chunk size (Telegram hard limit is 4096)
    show_tool_results: bool = True
    max_tool_history: int = 50

    # Confirmations
    confirmation_timeout: float = 300.0  # deny-by-default after 5 minutes

    # Rate limits (per chat:user:category)
    rate_limit_messages: int = 20
    rate_limit_messages_window_ms: int = 10_000
    rate_limit_commands: int = 10
    rate_limit_commands_window_ms: int = 10_000
    sweep_interval: int = 60

    # Providers
    default_provider: str = "zai"
    fallback_order: str = "zai,minimax,mistral"
    provider_timeout_connect: int = 10
    provider_timeout_read: int = 120
    max_history_messages: int = 20

    zai_api_key: str = Field("", validation_alias="ZAI_API_KEY")
    zai_base_url: str = "https://api.z.ai/api/paas/v4"
    zai_model: str = "glm-4.7"

    minimax_api_key: str = Field("", validation_alias="MINIMAX_API_KEY")
    minimax_base_url: str = "https://api.minimax.io/v1"
    minimax_model: str = "MiniMax-M2.1"

    mistral_api_key: str = Field("", validation_alias="MISTRAL_API_KEY")
    mistral_base_url: str = "https://api.mistral.ai/v1"
    mistral_model: str = "mistral-large-latest"

    claude_cli_enabled: bool = True
    claude_cli_binary: str = "claude"
    claude_cli_workdir: str = "/tmp/relay-workspace"
    claude_cli_timeout: int = 600  # seconds without output before the CLI is killed

    @field_validator("stream_throttle", "confirmation_timeout")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be > 0")
        return value

    @property
    def allowed_user_ids(self) -> set[int] | None:
        ids = {int(uid.strip()) for uid in self.allowed_users.split(",") if uid.strip()}
        return ids or None

    @property
    def fallback_providers(self) -> list[str]:
        return [p.strip().lower() for p in self.fallback_order.split(",") if p.strip()]
