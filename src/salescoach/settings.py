from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    model: str = "gpt-4o-mini"
    temperature: float = 0.2
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    llm_request_timeout_seconds: float = 60.0
    llm_max_retries: int = 0  # failed calls degrade to defaults instead

    cors_origins: str = "*"

    redis_url: str = "redis://localhost:6379/0"
    session_ttl_seconds: int = 0  # 0 keeps sessions until reset
    session_lock_timeout_seconds: float = 180.0  # raised to cover a full chat turn
    session_lock_wait_seconds: float = 60.0
    workflow_ttl_seconds: int = 604800  # 7 days

    recent_messages_window: int = 10
    memory_update_every: int = 3
    max_summary_bullets: int = 6

    coach_system_prompt: str = (
        "You are a sales objection coach. Your job is to help a sales rep respond "
        "to a customer message.\n"
        "Response format:\n"
        "<json>\n"
        "{\n"
        '  "reply": "string (2-4 sentences)",\n'
        '  "followUps": ["question 1", "question 2"]\n'
        "}\n"
        "</json>\n\n"
        "Be practical, confident, and specific. No markdown outside tags."
    )
    coach_user_prompt: str = (
        "Rolling summary: {rolling_summary}\n"
        "Deal Memory: {deal_memory}\n\n"
        "Recent conversation:\n"
        "{transcript}\n\n"
        "Now respond to the latest USER message."
    )

    memory_system_prompt: str = (
        "Extract Deal Memory. Output strictly valid JSON inside <json> tags.\n"
        "Keys: customerName, company, industry, painPoints, budget, timeline, "
        "objections, nextSteps, rollingSummary.\n"
        "painPoints, objections and nextSteps are arrays of strings; every other "
        "key is a string. rollingSummary is a short running digest of the whole "
        "conversation.\n"
        "<json>\n"
        "{ ... }\n"
        "</json>"
    )
    memory_user_prompt: str = (
        "Current Memory: {deal_memory}\n"
        "Rolling Summary: {rolling_summary}\n"
        "Conversation:\n"
        "{transcript}"
    )

    summary_prompt: str = (
        "Return ONLY valid JSON:\n"
        '{{ "summaryBullets": string[] }}  // {max_bullets} bullets max\n'
        "Conversation:\n"
        "{transcript}"
    )
    action_items_prompt: str = (
        "Return ONLY valid JSON:\n"
        '{{ "actionItems": [{{"owner":"Rep"|"Customer","item":string}}] }}\n'
        "Based on this summary:\n"
        "{summary}"
    )
    followup_email_prompt: str = (
        "Write a concise follow-up email (120-180 words).\n"
        "Context:\n"
        "- Summary: {summary}\n"
        "- Next steps: {next_steps}\n"
        "Return ONLY plain text. No subject line."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="allow",
    )


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
