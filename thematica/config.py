from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # OpenRouter (only needed for the llm coding strategy)
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "openai/gpt-4o-mini"
    openrouter_model: str = ""

    # Coding
    code_strategy: str = "local"  # local | llm
    llm_coding_max_tokens: int = 2048

    # Embeddings
    embedding_backend: str = "local"  # local | remote | hashing
    local_embed_model: str = "BAAI/bge-small-en-v1.5"
    local_embed_batch_size: int = 32
    remote_embed_model: str = "text-embedding-3-small"
    remote_embed_base_url: str = "https://api.openai.com/v1"
    remote_embed_api_key: str = ""
    remote_embed_timeout_seconds: float = 30.0
    hashing_embed_dim: int = 384
    embedding_cache_max_entries: int = 20000

    # Remote call protection
    provider_retry_max: int = 3
    provider_retry_backoff_seconds: float = 0.5
    rate_limit_requests: int = 60
    rate_limit_window_seconds: float = 60.0
    circuit_failure_threshold: int = 5
    circuit_failure_window_seconds: float = 60.0
    circuit_cooldown_seconds: float = 60.0

    # Batching
    batch_size: int = 10
    max_parallel_batches_local: int = 6
    max_parallel_batches_remote: int = 2
    max_parallel_sources: int = 8

    # Theme quality
    cross_batch_merge_threshold: float = 0.80
    dedup_similarity_threshold: float = 0.85
    abstract_word_limit: int = 300
    abstract_distinctiveness_relaxation: float = 0.7
    strict_purpose_validation: bool = True

    # Progress
    progress_history_size: int = 500
    progress_max_runs: int = 200

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]


settings = Settings()
