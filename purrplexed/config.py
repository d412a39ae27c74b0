from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    api_base_url: str = "http://localhost:3000"
    api_token: str = ""  # Sent as "Authorization: Bearer <token>" when set
    upload_path: str = "/api/upload"
    analyze_path: str = "/api/analyze"

    # upload: multipart upload then fileUri per stage
    # inline: base64 data URL embedded in every stage request
    # stream: one text/event-stream request for all stages
    backend_contract: Literal["upload", "inline", "stream"] = "upload"
    detail_concurrency: Literal["sequential", "concurrent"] = "sequential"

    # HTTP timeout settings (seconds)
    request_timeout: float = 45.0
    connect_timeout: float = 10.0

    # Usage quota
    free_daily_limit: int = 5
    premium_override: bool = False
    database_url: str = "sqlite:///./purrplexed.db"
    usage_meter_key: str = "default"

    # Inline image encoding
    max_image_dimension: int = 768
    jpeg_quality: int = 60  # Pillow scale (1-95)

    class Config:
        env_file = ".env"
        env_prefix = "PURRPLEXED_"


settings = Settings()
