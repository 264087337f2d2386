from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_env: str = "dev"
    log_level: str = "INFO"

    # Backend selection: mock | tesseract | paddleocr | aws_textract | ocr_space
    #                    | google_vision | azure_cognitive | openai_vision
    default_backend: str = "mock"
    backend_timeout_seconds: float = Field(default=30.0, gt=0)

    # Fallback
    fallback_enabled: bool = True
    fallback_max_attempts: int | None = Field(default=None, ge=1)  # None -> every backend in the order
    fallback_order: str = "tesseract,ocr_space,google_vision,azure_cognitive"

    # Result cache
    cache_enabled: bool = True
    cache_ttl_seconds: int = Field(default=3600, ge=0)
    cache_sweep_interval_seconds: int = 600

    # Image preprocessing
    preprocessing_enabled: bool = True
    preprocessing_grayscale: bool = False
    preprocessing_contrast: float | None = None
    preprocessing_brightness: float | None = None
    preprocessing_sharpen: bool = False
    preprocessing_resize_width: int | None = None
    preprocessing_resize_height: int | None = None
    preprocessing_resize_fit: Literal["cover", "contain", "fill", "inside", "outside"] = "inside"

    # Batches
    batch_parallel_enabled: bool = True
    batch_max_concurrency: int = Field(default=3, ge=1)
    batch_cancel_poll_seconds: float = Field(default=1.0, gt=0)
    batch_staging_prefix: str = "batches"
    task_store_timeout_seconds: float = Field(default=10.0, gt=0)

    # Celery broker for batch jobs; dev and test run jobs eagerly in-process
    redis_url: str = "redis://localhost:6379/0"

    # Tesseract (local)
    tesseract_cmd: str | None = None
    tesseract_data_path: str | None = None
    tesseract_lang: str = "eng"

    # PaddleOCR (local)
    paddle_lang: str = "en"
    paddle_use_gpu: bool = False

    # AWS Textract
    aws_textract_enabled: bool = False
    aws_region: str = "us-east-1"
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None

    # OCR.space
    ocr_space_api_key: str | None = None
    ocr_space_endpoint: str = "https://api.ocr.space/parse/image"
    ocr_space_language: str = "eng"
    ocr_space_overlay_required: bool = False

    # Google Cloud Vision
    google_vision_api_key: str | None = None
    google_vision_project_id: str = ""

    # Azure Computer Vision (Read API)
    azure_cognitive_endpoint: str | None = None
    azure_cognitive_api_key: str | None = None
    azure_cognitive_language: str | None = None
    azure_poll_max_attempts: int = Field(default=10, ge=1)
    azure_poll_interval_seconds: float = 1.0

    # OpenAI vision model
    openai_api_key: str | None = None
    vision_model: str = "gpt-4o-mini"

    # Task store (SqlTaskStore); unset -> in-memory task store
    database_url: str | None = None

    # Object store: local | s3
    storage_backend: Literal["local", "s3"] = "local"
    local_storage_path: Path = Path(".local_storage")
    s3_bucket: str | None = None
    s3_region: str | None = None
    s3_endpoint_url: str | None = None

    def fallback_provider_order(self) -> list[str]:
        return [p.strip() for p in self.fallback_order.split(",") if p.strip()]


settings = Settings()
