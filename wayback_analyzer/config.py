from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Wayback URL Analyzer"
    log_level: str = "INFO"

    cdx_endpoint: str = "https://web.archive.org/cdx/search/cdx"

    # Deployed relay endpoint (POST {domain, offset, limit}); empty = query CDX directly
    relay_url: str = ""
    # URL templates tried round-robin per attempt, "{url}" = direct
    relays: list[str] = ["{url}"]

    max_retries: int = 3
    page_size: int = 1000
    max_urls: int = 10000
    batch_size: int = 10
    batch_delay_ms: int = 500
    timeout_ms: int = 30000
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000
    empty_page_limit: int = 2
    max_response_bytes: int = 50 * 1024 * 1024
    verify_status: bool = False

    relay_default_limit: int = 50

    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""        # anon/service_role key
    searches_table: str = "searches"
    feedback_table: str = "feedback"


settings = Settings()
