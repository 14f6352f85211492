"""
Environment configuration (Zhipu text/image providers, local ComfyUI backend)
"""

from functools import lru_cache
from typing import List, Tuple

from pydantic import field_validator
from pydantic_settings import BaseSettings

TEMPERATURE_RANGE = (0.1, 1.0)


class Settings(BaseSettings):
    # Provider selection
    AI_PROVIDER: str = "mock"
    IMAGE_PROVIDER: str = ""

    # Zhipu text
    ZHIPU_TEXT_API_KEY: str = ""
    ZHIPU_STORY_MODEL: str = "glm-4.6v-flash"
    ZHIPU_STORY_TIMEOUT_MS: int = 120000
    ZHIPU_TEMPERATURE: float = 0.7
    ZHIPU_STORY_MAX_TOKENS: int = 2048

    # Zhipu image
    ZHIPU_IMAGE_API_KEY: str = ""
    ZHIPU_API_KEY: str = ""
    ZHIPU_IMAGE_MODEL: str = "cogview-3-flash"
    ZHIPU_IMAGE_SIZE: str = "896x672"
    ZHIPU_IMAGE_TIMEOUT_MS: int = 120000
    ZHIPU_IMAGE_WATERMARK_ENABLED: bool = False
    ZHIPU_IMAGE_CONTENT_FILTER_LEVEL: int = 3

    # Upstream load limits
    ZHIPU_MAX_CONCURRENT: int = 2
    MAX_INFLIGHT_PER_CLIENT: int = 1
    RETRY_BACKOFF_MS: str = "1000,2000,4000"

    # Local ComfyUI workflow backend
    COMFYUI_BASE_URL: str = "http://127.0.0.1:8188"
    COMFYUI_WORKFLOW_PATH: str = "workflows/pixel_art.json"
    COMFYUI_WIDTH: int = 896
    COMFYUI_HEIGHT: int = 672
    COMFYUI_TIMEOUT_MS: int = 120000
    COMFYUI_OUTPUT_DIR: str = "generated"
    COMFYUI_PUBLIC_BASE_URL: str = ""
    COMFYUI_TTL_MINUTES: int = 60

    # HTTP server
    API_PORT: int = 8788
    ALLOWED_ORIGINS: str = ""

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    LOG_FILE: str = "server.jsonl"

    class Config:
        env_file = (".env", ".env.local")
        extra = "ignore"

    @field_validator("ZHIPU_TEMPERATURE")
    @classmethod
    def _clamp_temperature(cls, value: float) -> float:
        low, high = TEMPERATURE_RANGE
        return min(high, max(low, value))

    @field_validator("ZHIPU_MAX_CONCURRENT", "MAX_INFLIGHT_PER_CLIENT")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        return max(1, value)

    @property
    def text_api_key(self) -> str:
        return _strip_bearer(self.ZHIPU_TEXT_API_KEY)

    @property
    def image_api_key(self) -> str:
        return _strip_bearer(self.ZHIPU_IMAGE_API_KEY or self.ZHIPU_API_KEY)

    def retry_backoff_seconds(self) -> Tuple[float, ...]:
        """Backoff table for HTTP 429, one entry per retry"""
        delays = []
        for part in self.RETRY_BACKOFF_MS.split(","):
            part = part.strip()
            if part.isdigit():
                delays.append(int(part) / 1000)
        return tuple(delays)

    def text_provider_name(self) -> str:
        if self.AI_PROVIDER.lower() == "zhipu" and self.text_api_key:
            return "zhipu"
        return "mock"

    def image_provider_name(self) -> str:
        choice = (self.IMAGE_PROVIDER or self.AI_PROVIDER).lower()
        if choice == "comfyui":
            return "comfyui"
        if choice == "zhipu" and self.image_api_key:
            return "zhipu"
        return "mock"

    def get_available_providers(self) -> dict:
        """Provider availability"""
        return {
            "zhipu_text": bool(self.text_api_key),
            "zhipu_image": bool(self.image_api_key),
            "comfyui": bool(self.COMFYUI_BASE_URL),
            "mock": True
        }

    def get_current_provider_info(self) -> dict:
        text = self.text_provider_name()
        image = self.image_provider_name()
        return {
            "text": {
                "provider": text,
                "model": self.ZHIPU_STORY_MODEL if text == "zhipu" else "mock_generator",
            },
            "image": {
                "provider": image,
                "model": self.ZHIPU_IMAGE_MODEL if image == "zhipu" else image,
            },
        }

    def allowed_origin_patterns(self) -> Tuple[List[str], str]:
        """Explicit origins plus a regex covering bare localhost entries (any port)"""
        origins = []
        regexes = []
        for origin in self.ALLOWED_ORIGINS.split(","):
            origin = origin.strip()
            if not origin:
                continue
            lower = origin.lower().rstrip("/")
            if lower in LOCAL_ORIGINS:
                regexes.append(LOCAL_ORIGINS[lower])
            else:
                origins.append(origin)
        if not origins and not regexes:
            regexes.append(LOCAL_ORIGINS["http://localhost"])
        return origins, "|".join(regexes)

    def validate_settings(self) -> list:
        """Configuration warnings"""
        warnings = []

        if self.AI_PROVIDER.lower() not in ["mock", "zhipu"]:
            warnings.append(f"Unknown AI_PROVIDER: {self.AI_PROVIDER}")

        if self.AI_PROVIDER.lower() == "zhipu" and not self.text_api_key:
            warnings.append("AI_PROVIDER=zhipu but ZHIPU_TEXT_API_KEY is empty; using mock story provider.")

        if self.image_provider_name() == "mock" and (self.IMAGE_PROVIDER or self.AI_PROVIDER).lower() == "zhipu":
            warnings.append("Zhipu image provider selected but no image API key is set; using mock images.")

        if not self.retry_backoff_seconds():
            warnings.append("RETRY_BACKOFF_MS is empty; HTTP 429 responses will not be retried.")

        if self.ZHIPU_MAX_CONCURRENT > 10:
            warnings.append("ZHIPU_MAX_CONCURRENT is unusually high for a rate-limited provider.")

        return warnings


LOCAL_ORIGINS = {
    "http://localhost": r"http://localhost:\d+",
    "https://localhost": r"https://localhost:\d+",
    "http://127.0.0.1": r"http://127\.0\.0\.1:\d+",
    "https://127.0.0.1": r"https://127\.0\.0\.1:\d+",
}


def _strip_bearer(value: str) -> str:
    value = value.strip()
    if value.lower().startswith("bearer "):
        return value[7:].strip()
    return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
