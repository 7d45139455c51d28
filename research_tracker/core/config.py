from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

PRODUCTION_ENVIRONMENTS = {"prod", "production"}
PLACEHOLDER_WEBHOOK_SECRETS = {"", "your_webhook_secret_from_parallel_settings"}

DEFAULT_RESEARCH_PROMPT = (
    "Produce a structured company profile with an executive_summary, the products offered, "
    "evidence of LLM usage, estimated team size and employee count, and 3-5 source URLs."
)


class Settings(BaseSettings):
    app_name: str = "company-research-tracker"
    environment: str = "dev"
    log_level: str = "INFO"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    processor_base_url: str = "https://api.parallel.ai"
    processor_api_key: str | None = None
    processor_tier: str = "base"
    processor_timeout_seconds: float = 15.0
    webhook_url: str | None = None
    webhook_secret: str | None = None
    webhook_require_signature: bool | None = None
    research_prompt: str = DEFAULT_RESEARCH_PROMPT
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    analyzer_model: str = "gpt-5"
    analyzer_timeout_seconds: float = 60.0
    reconcile_interval_seconds: float = 60.0
    reconcile_max_concurrency: int = 4
    reconcile_job_timeout_seconds: float = 120.0
    reconcile_batch_size: int = 500
    orphan_pending_after_seconds: int = 900
    max_backoff_seconds: float = 300.0
    otel_enabled: bool = True
    otel_service_name: str = "company-research-tracker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="RT_", extra="ignore")

    @property
    def effective_webhook_secret(self) -> str | None:
        if self.webhook_secret is None or self.webhook_secret.strip() in PLACEHOLDER_WEBHOOK_SECRETS:
            return None
        return self.webhook_secret

    @property
    def require_signed_webhooks(self) -> bool:
        if self.webhook_require_signature is not None:
            return self.webhook_require_signature
        return self.environment.strip().lower() in PRODUCTION_ENVIRONMENTS


@lru_cache
def get_settings() -> Settings:
    return Settings()
