"""XP Discovery configuration: settings, model tiers, engine tuning."""

from dataclasses import dataclass
from typing import Literal

from pydantic_settings import BaseSettings

ModelTier = Literal["sonnet", "haiku"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Keys
    anthropic_api_key: str = ""

    # Storage
    database_url: str = "sqlite:///data/discovery.db"
    chroma_dir: str = "data/chroma"

    # CORS (comma-separated origins)
    cors_origins: str = "http://localhost:3000"

    # Rate limits (fixed window, per caller)
    rate_limit_requests: int = 60
    rate_limit_window_seconds: float = 60.0
    rate_limit_expensive_requests: int = 10  # converse endpoints
    tool_rate_limit_requests: int = 30  # orchestrator tool invocations per caller

    # LLM defaults
    default_max_tokens: int = 2048
    default_max_retries: int = 2
    default_temperature: float = 0.0
    llm_timeout_seconds: float = 30.0  # per call, and per streamed chunk
    llm_max_retries: int = 2  # transport retries before UpstreamUnavailableError
    llm_breaker_threshold: int = 5
    llm_breaker_cooldown_seconds: float = 60.0

    # Models, with USD prices per million (input, output, cache-read) tokens
    model_sonnet: str = "claude-sonnet-4-6"
    model_haiku: str = "claude-haiku-4-5-20251001"
    price_sonnet: tuple[float, float, float] = (3.0, 15.0, 0.30)
    price_haiku: tuple[float, float, float] = (0.80, 4.0, 0.08)

    # Hybrid retriever
    retriever_vector_weight: float = 0.65
    retriever_keyword_weight: float = 0.35
    retriever_candidate_pool: int = 100
    retriever_max_limit: int = 100

    # Embeddings
    embedding_max_chars: int = 8000
    embedding_timeout_seconds: float = 10.0
    embedding_retry_delay: float = 0.5
    store_timeout_seconds: float = 5.0

    # Orchestrator
    max_tool_calls_per_turn: int = 6
    tool_call_timeout_seconds: float = 10.0
    turn_timeout_seconds: float = 45.0
    synthesis_reserve_seconds: float = 15.0  # kept back from planning and tools for the answer
    history_turns: int = 10

    # User similarity
    similarity_jaccard_weight: float = 0.4
    similarity_cosine_weight: float = 0.6
    similarity_location_bonus: float = 0.1
    similarity_cache_ttl_hours: float = 24.0
    twins_default_min_score: float = 0.3

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()


@dataclass(frozen=True)
class ModelProfile:
    """A model id and its token prices (USD per million tokens)."""

    model_id: str
    input_price: float
    output_price: float
    cache_read_price: float

    def cost(self, input_tokens: int, output_tokens: int, cached_input_tokens: int = 0) -> float:
        uncached = max(input_tokens - cached_input_tokens, 0)
        total = (
            uncached * self.input_price
            + cached_input_tokens * self.cache_read_price
            + output_tokens * self.output_price
        ) / 1_000_000
        return round(total, 6)


def get_model_profiles() -> dict[str, ModelProfile]:
    """Resolve the tier -> model profile map from settings (env-overridable)."""
    return {
        "sonnet": ModelProfile(settings.model_sonnet, *settings.price_sonnet),
        "haiku": ModelProfile(settings.model_haiku, *settings.price_haiku),
    }


MODELS: dict[str, ModelProfile] = get_model_profiles()
