from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
    # Reddit
    reddit_user_agent: str = Field("python:youtube-to-reddit:1.0.0", alias="REDDIT_USER_AGENT")

    # WebSub
    hub_url: str = "https://pubsubhubbub.appspot.com/subscribe"

    # Paths
    db_path: Path = Path("data/relay.db")
    log_file: Path = Path("relay.log")

    # Leases
    default_lease_seconds: int = 432000
    renewal_interval_seconds: int = 300
    renewal_window_hours: int = 24
    renewal_pending_seconds: int = 3600
    renewer_enabled: bool = True

    # Reddit posting
    reddit_retry_attempts: int = 3
    retry_backoff_multiplier: float = 1.0
    retry_backoff_max_seconds: float = 30.0
    max_stickied_per_subreddit: int = 2
    shorts_max_seconds: int = 180

    # Concurrency
    max_workers: int = 5
    http_timeout_seconds: float = 10.0
    notification_deadline_seconds: float = 60.0
    claim_timeout_seconds: int = 900

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", env_file_encoding='utf-8')

settings = Settings()
