"""Application configuration loaded from environment variables."""

import os

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_ENV: str = "development"
    APP_DEBUG: bool = True

    BACKEND_HOST: str = "0.0.0.0"
    BACKEND_PORT: int = 8000

    GEMINI_API_KEY: str = ""
    GEMINI_API_BASE: str = "https://generativelanguage.googleapis.com/v1beta/openai"
    GEMINI_MODEL: str = "gemini-2.0-flash"
    INFERENCE_TIMEOUT: float = 60.0
    STAGE_MAX_CONCURRENCY: int = 0  # 0 = unbounded fan-out

    SANDBOX_COMMAND_TIMEOUT: float = 120.0
    SANDBOX_TEST_TIMEOUT: float = 300.0

    HEAL_MAX_ITERATIONS: int = 5

    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "shared/logs/app.log"

    class Config:
        env_file = (".env", "../.env")  # works from both the repo root and backend/
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()

# ── Export key settings to os.environ so library defaults pick them up ──
# GeminiClient and DockerSandbox fall back to os.environ when built
# without explicit arguments.
_EXPORT_KEYS = [
    "GEMINI_API_KEY", "GEMINI_API_BASE", "GEMINI_MODEL", "SANDBOX_COMMAND_TIMEOUT",
]
for _key in _EXPORT_KEYS:
    _val = getattr(settings, _key, "")
    if _val and not os.environ.get(_key):
        os.environ[_key] = str(_val)
