"""Pydantic-based settings for postflow."""

from typing import Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration settings for the postflow server and worker."""

    model_config = SettingsConfigDict(
        env_prefix="POSTFLOW_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,  # Make settings immutable
    )

    # Service settings
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8010, description="Server port")
    log_level: str = Field(default="INFO", description="Logging level")

    # Data directories
    data_dir: str = Field(default="./data", description="Base data directory")
    database_url: str = Field(default="sqlite+aiosqlite:///data/postflow.db", description="Database URL")

    # Scheduler settings
    ready_poll_interval: float = Field(default=10.0, description="Seconds between ready-job ticks")
    deletion_poll_interval: float = Field(default=60.0, description="Seconds between deletion ticks")
    concurrency_limits: Dict[str, int] = Field(
        default_factory=lambda: {"post": 1, "comment": 1, "coupas": 1},
        description="Max PROCESSING jobs per job type (0 = unlimited)",
    )
    claim_batch_size: int = Field(default=10, description="Max jobs claimed per tick for unlimited kinds")
    task_delay: float = Field(default=0.0, description="Delay in seconds before each browser task")
    scheduler_enabled: bool = Field(default=True, description="Start the job scheduler with the server")

    # Retry defaults for pipeline steps
    step_max_attempts: int = Field(default=3, description="Attempts per retried pipeline step")
    step_retry_interval: float = Field(default=1.0, description="Base retry interval in seconds")
    step_retry_backoff: str = Field(default="exponential", description="none, linear or exponential")
    step_retry_max_interval: Optional[float] = Field(default=None, description="Cap for a single retry wait")
    step_retry_jitter: float = Field(default=0.0, description="Random jitter fraction added to retry waits")

    # Browser sessions
    browser_session_mode: str = Field(default="reuse", description="exclusive or reuse")
    show_browser_window: bool = Field(default=False, description="Run browser sessions headed")
    site_plugin: Optional[str] = Field(default=None, description="module:factory returning the site automation client")

    # Coupang partners API
    coupang_base_url: str = Field(default="https://api-gateway.coupang.com", description="Partners API base URL")
    coupang_access_key: Optional[str] = Field(default=None, description="Partners API access key")
    coupang_secret_key: Optional[str] = Field(default=None, description="Partners API secret key")
    coupang_sub_id: str = Field(default="postflow", description="Sub id attached to deeplinks")
    coupang_rate_limit: int = Field(default=50, description="Partner API calls allowed per window")
    coupang_rate_window: float = Field(default=60.0, description="Partner API rate window in seconds")

    # Coupas workflow
    coupas_keyword_min: int = Field(default=2, description="Minimum search keywords per post")
    coupas_keyword_max: int = Field(default=5, description="Maximum search keywords per post")
    coupas_products_per_keyword: int = Field(default=1, description="Affiliate products kept per keyword")
    coupas_comment_template: str = Field(
        default="이거 ㄱㄱ\n{blog_link}", description="Comment posted under the source post"
    )
    gallery_blacklist: List[str] = Field(default_factory=list, description="Gallery ids never processed by coupas jobs")

    # Monitoring loops
    monitoring_enabled: bool = Field(default=False, description="Run the gallery monitoring loops")
    monitored_galleries: List[str] = Field(default_factory=list, description="Gallery list URLs to watch")
    monitor_crawl_interval: float = Field(default=300.0, description="Seconds between gallery crawls")
    monitor_comment_interval: float = Field(default=60.0, description="Seconds between auto-comment passes")
    monitor_comments: List[str] = Field(default_factory=list, description="Comment texts picked at random")

    # Content generation
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    openai_model: str = Field(default="gpt-4o-mini", description="Model used for keyword inference")

    # HTTP
    http_timeout: float = Field(default=30.0, description="Timeout for partner HTTP calls")

    @property
    def work_dir(self) -> str:
        """Directory for temporary per-run working folders."""
        return f"{self.data_dir}/work"

    @property
    def log_format(self) -> str:
        """Log message format."""
        return "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


# Global settings instance
settings = Settings()
