from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class Settings:
    # Default DB path used by the CLI. The vector index lives next to it.
    db_path: str = os.getenv("DOCGRAPH_DB_PATH", "./data/docgraph.db")

    # Embeddings: "fastembed" (local) or "ollama".
    embed_provider: str = os.getenv("DOCGRAPH_EMBED_PROVIDER", "fastembed")
    embed_model: str = os.getenv("DOCGRAPH_EMBED_MODEL", "BAAI/bge-small-en-v1.5")

    # Ollama, one model per tier.
    ollama_base_url: str = os.getenv("DOCGRAPH_OLLAMA_BASE_URL", "http://localhost:11434")
    model_fast: str = os.getenv("DOCGRAPH_MODEL_FAST", "llama3.2:1b")
    model_default: str = os.getenv("DOCGRAPH_MODEL_DEFAULT", "llama3.1:8b")
    model_advanced: str = os.getenv("DOCGRAPH_MODEL_ADVANCED", "qwen2.5:32b")
    ollama_temperature: float = float(os.getenv("DOCGRAPH_OLLAMA_TEMPERATURE", "0.2"))
    ollama_timeout_s: float = float(os.getenv("DOCGRAPH_OLLAMA_TIMEOUT_S", "120"))

    # "llm" asks the fast tier for entities; "heuristic" works offline.
    extractor: str = os.getenv("DOCGRAPH_EXTRACTOR", "llm")

    # Ingestion
    chunk_threshold_lines: int = int(os.getenv("DOCGRAPH_CHUNK_THRESHOLD_LINES", "500"))
    ingest_concurrency: int = int(os.getenv("DOCGRAPH_INGEST_CONCURRENCY", "4"))

    # Query pipeline defaults
    max_chunks: int = int(os.getenv("DOCGRAPH_MAX_CHUNKS", "10"))
    max_traversal_steps: int = int(os.getenv("DOCGRAPH_MAX_TRAVERSAL_STEPS", "5"))
    min_relevance: float = float(os.getenv("DOCGRAPH_MIN_RELEVANCE", "0.7"))

    # Concept merge pass
    merge_threshold: float = float(os.getenv("DOCGRAPH_MERGE_THRESHOLD", "0.92"))

    # Circuit breaker around embedding/LLM calls
    breaker_failure_ratio: float = float(os.getenv("DOCGRAPH_BREAKER_FAILURE_RATIO", "0.5"))
    breaker_window_s: float = float(os.getenv("DOCGRAPH_BREAKER_WINDOW_S", "60"))
    breaker_min_samples: int = int(os.getenv("DOCGRAPH_BREAKER_MIN_SAMPLES", "10"))
    breaker_cooldown_s: float = float(os.getenv("DOCGRAPH_BREAKER_COOLDOWN_S", "30"))

    # Retries for transient failures
    retry_attempts: int = int(os.getenv("DOCGRAPH_RETRY_ATTEMPTS", "3"))
    retry_base_delay_s: float = float(os.getenv("DOCGRAPH_RETRY_BASE_DELAY_S", "1.0"))
    retry_max_delay_s: float = float(os.getenv("DOCGRAPH_RETRY_MAX_DELAY_S", "8.0"))

    log_level: str = os.getenv("DOCGRAPH_LOG_LEVEL", "INFO")
    log_json: bool = os.getenv("DOCGRAPH_LOG_JSON", "0") in {"1", "true", "yes"}
