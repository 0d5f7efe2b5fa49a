"""Environment-based configuration for the document field locator."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Field locator settings, loaded from environment variables."""

    # Server
    PORT: int = 8092
    MAX_UPLOAD_BYTES: int = 20 * 1024 * 1024

    # Inference service (OpenAI-compatible; empty URL = extraction disabled)
    INFERENCE_SERVICE_URL: str = ""
    INFERENCE_API_KEY: str = ""
    MODEL_ID: str = "Qwen/Qwen2.5-VL-7B-Instruct"
    CHAT_MODEL_ID: str = ""  # Empty = reuse MODEL_ID

    # Inference timeouts and retry (1 attempt = fail straight into the fallback branch)
    INFERENCE_TIMEOUT_SECONDS: int = 300
    INFERENCE_CONNECT_TIMEOUT: int = 30
    INFERENCE_RETRY_ATTEMPTS: int = 1
    INFERENCE_RETRY_DELAY: float = 2.0
    INFERENCE_RETRY_BACKOFF: float = 2.0

    # Per-stage output budgets and sampling
    GROUND_MAX_TOKENS: int = 4000
    REFINE_MAX_TOKENS: int = 3000
    FALLBACK_MAX_TOKENS: int = 2000
    TEXT_MAX_TOKENS: int = 2000  # PDF label/value pass
    STAGE_TEMPERATURE: float = 0.05
    FALLBACK_TEMPERATURE: float = 0.1
    CHAT_TEMPERATURE: float = 0.3

    # Geometry (GRID_CELLS drives both the overlay and the grounding prompt)
    GRID_CELLS: int = 10
    ASSUMED_CANVAS_WIDTH: int = 1000
    ASSUMED_CANVAS_HEIGHT: int = 1400

    model_config = {"env_prefix": "", "case_sensitive": True}


settings = Settings()
