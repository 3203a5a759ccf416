from typing import Optional

from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+psycopg://user:password@db/dbname"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    AWS_ENDPOINT_URL: str
    AWS_ACCESS_KEY_ID: str
    AWS_SECRET_ACCESS_KEY: str
    AWS_REGION_NAME: str = "ru-1"
    S3_BUCKET_NAME: str
    # Public base for object URLs; falls back to {AWS_ENDPOINT_URL}/{S3_BUCKET_NAME}
    S3_PUBLIC_BASE_URL: Optional[str] = None

    CELERY_BROKER_URL: str = "redis://redis:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://redis:6379/0"

    JWT_SECRET_KEY: str = "change-me-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7

    # openai | ideogram | leonardo
    AI_IMAGE_PROVIDER: str = "openai"
    # structured | natural
    AI_PROMPT_FORMAT: str = "structured"
    AI_FRAME_DELAY_SECONDS: float = 1.0

    OPENAI_API_KEY: Optional[str] = None
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    OPENAI_IMAGE_MODEL: str = "dall-e-3"
    OPENAI_IMAGE_SIZE: str = "1024x1024"
    OPENAI_IMAGE_QUALITY: str = "standard"
    OPENAI_TIMEOUT_SECONDS: float = 120.0

    IDEOGRAM_API_KEY: Optional[str] = None
    IDEOGRAM_BASE_URL: str = "https://api.ideogram.ai"
    IDEOGRAM_GENERATE_PATH: str = "/v1/ideogram-v3/generate"
    IDEOGRAM_ASPECT_RATIO: str = "1x1"
    IDEOGRAM_RENDERING_SPEED: str = "DEFAULT"
    IDEOGRAM_STYLE_TYPE: str = "DESIGN"
    IDEOGRAM_NEGATIVE_PROMPT: str = "blurry, low quality, distorted, text, watermark, logo"
    IDEOGRAM_TIMEOUT_SECONDS: float = 60.0

    LEONARDO_API_KEY: Optional[str] = None
    LEONARDO_BASE_URL: str = "https://cloud.leonardo.ai/api/rest/v1"
    LEONARDO_MODEL_ID: str = "aa77f04e-3eec-4034-9c07-d0f619684628"
    LEONARDO_PHOTO_REAL: bool = True
    LEONARDO_ALCHEMY: bool = True
    LEONARDO_GUIDANCE_SCALE: int = 8
    LEONARDO_NEGATIVE_PROMPT: str = "blurry, low quality, distorted, text, watermark, logo"
    LEONARDO_POLL_INTERVAL_SECONDS: float = 5.0
    LEONARDO_MAX_POLL_ATTEMPTS: int = 36
    LEONARDO_TIMEOUT_SECONDS: float = 120.0

    OPENAI_VISION_API_KEY: Optional[str] = None
    OPENAI_VISION_BASE_URL: str = "https://api.openai.com/v1"
    OPENAI_VISION_MODEL: str = "gpt-4o"
    OPENAI_VISION_MAX_TOKENS: int = 2048
    OPENAI_VISION_TEMPERATURE: float = 0.3
    OPENAI_VISION_IMAGE_DETAIL: str = "high"
    OPENAI_VISION_MAX_RETRIES: int = 2
    OPENAI_VISION_RETRY_DELAY_SECONDS: float = 2.0
    OPENAI_VISION_TIMEOUT_SECONDS: float = 60.0

    # 0 disables the limit
    GUEST_FREE_PREVIEW_LIMIT: int = 5
    PREVIEW_360_FRAME_COUNT: int = 12

    WORKER_POLL_INTERVAL_SECONDS: float = 10.0
    WORKER_BATCH_SIZE: int = 3
    JOB_TIMEOUT_SECONDS: float = 120.0
    STUCK_JOB_THRESHOLD_SECONDS: float = 180.0
    # Pending/Analyzing upgrade analyses older than this are failed by the upgrade poller
    STUCK_ANALYSIS_THRESHOLD_SECONDS: float = 600.0

    UPGRADE_MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024

    class Config:
        env_file = ".env"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

settings = Settings()
