"""
Application configuration.

All settings are loaded from environment variables. No defaults for secrets:
if a required secret is missing, the process fails to start with a clear error.

Usage:
    from autopilot.config import settings
    print(settings.database_url)
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Literal, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # --- Database ---
    database_url: str = Field(
        default="sqlite:///./autopilot.db",
        description="SQLAlchemy database URL",
    )

    # --- Anthropic LLM ---
    anthropic_api_key: str = Field(description="Anthropic API key")
    anthropic_model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Anthropic model to use",
    )
    anthropic_max_tokens_classify: int = Field(default=500)
    anthropic_max_tokens_draft: int = Field(default=800)

    # --- Credential storage ---
    credential_encryption_key: str = Field(
        description="Secret used to derive the Fernet key for stored channel credentials",
    )

    # --- Microsoft (Outlook) ---
    azure_client_id: str = Field(default="")
    azure_client_secret: str = Field(default="")
    azure_tenant_id: str = Field(default="common")
    graph_base_url: str = Field(default="https://graph.microsoft.com/v1.0")
    graph_scopes: list[str] = Field(
        default=[
            "https://graph.microsoft.com/Mail.ReadWrite",
            "https://graph.microsoft.com/Mail.Send",
        ],
        description=(
            "Microsoft Graph API scopes. Only include Graph resource scopes here. "
            "MSAL automatically requests openid, profile, and offline_access."
        ),
    )

    # --- Google (Gmail) ---
    google_client_id: str = Field(default="")
    google_client_secret: str = Field(default="")
    google_token_url: str = Field(default="https://oauth2.googleapis.com/token")
    gmail_base_url: str = Field(default="https://gmail.googleapis.com/gmail/v1")

    # --- Triggers ---
    cron_secret: Optional[str] = Field(
        default=None,
        description="Shared secret expected as 'Authorization: Bearer <secret>' on /api routes",
    )

    # --- Auto-send queue ---
    auto_send_batch_limit: int = Field(default=20)
    auto_send_max_attempts: int = Field(default=3)
    processing_stale_minutes: int = Field(default=10)
    sent_label: str = Field(default="AI Replied")

    # --- Ingestion / AI budgets ---
    sync_max_messages: int = Field(default=50)
    classify_excerpt_chars: int = Field(default=1500)
    classify_batch_limit: int = Field(default=25)
    draft_thread_context_limit: int = Field(default=5)
    draft_thread_excerpt_chars: int = Field(default=200)
    draft_default_tone: str = Field(default="professional")
    draft_default_max_length: int = Field(default=500)

    # --- Auto-reply eligibility ---
    reply_filter_config_path: str = Field(default="config/reply_filters.yaml")

    # --- Entitlements ---
    entitled_workspaces: list[str] = Field(
        default=[],
        description="Workspaces entitled to AI drafts. Empty means every workspace is entitled.",
    )

    # --- App ---
    app_name: str = Field(default="Autopilot")
    app_env: Literal["development", "staging", "production"] = Field(default="development")
    log_level: str = Field(default="info")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()
