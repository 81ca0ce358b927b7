"""
Central configuration module for the local chat application.

This module manages all configuration settings including:
- Model catalog and preferred small models
- Fallback (CPU) model and its generation limit
- Sampling defaults for streaming chat
- Session history persistence settings
"""

import os
from typing import List, Tuple
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_catalog(value: str) -> List[Tuple[str, str]]:
    """Parse "model_id:size_class" pairs separated by commas."""
    catalog = []
    for entry in _split_list(value):
        model_id, _, size_class = entry.rpartition(":")
        if not model_id:
            model_id, size_class = size_class, "large"
        catalog.append((model_id, size_class or "large"))
    return catalog


class Config:
    """Central configuration for the local chat application."""

    # Accelerated backend models, smallest first
    MODEL_CATALOG: List[Tuple[str, str]] = _parse_catalog(
        os.getenv(
            "MODEL_CATALOG",
            "Qwen/Qwen2.5-0.5B-Instruct:small,"
            "meta-llama/Llama-3.2-1B-Instruct:small,"
            "microsoft/Phi-3.5-mini-instruct:small,"
            "Qwen/Qwen2.5-1.5B-Instruct:large,"
            "Qwen/Qwen2.5-3B-Instruct:large",
        )
    )
    PREFERRED_MODELS: List[str] = _split_list(
        os.getenv(
            "PREFERRED_MODELS",
            "Qwen/Qwen2.5-0.5B-Instruct,"
            "meta-llama/Llama-3.2-1B-Instruct,"
            "microsoft/Phi-3.5-mini-instruct",
        )
    )

    # Device and compute settings
    USE_GPU: bool = os.getenv("USE_GPU", "true").lower() == "true"
    TORCH_DTYPE: str = os.getenv("TORCH_DTYPE", "auto")  # "auto", "float16", "bfloat16", "float32"

    # Fallback (CPU) backend
    FALLBACK_MODEL_ID: str = os.getenv("FALLBACK_MODEL_ID", "HuggingFaceTB/SmolLM2-135M-Instruct")
    FALLBACK_MAX_TOKENS: int = int(os.getenv("FALLBACK_MAX_TOKENS", "128"))
    FALLBACK_TEMPERATURE: float = float(os.getenv("FALLBACK_TEMPERATURE", "0.7"))

    # Streaming generation defaults (user adjustable at runtime)
    MAX_NEW_TOKENS: int = int(os.getenv("MAX_NEW_TOKENS", "512"))
    TEMPERATURE: float = float(os.getenv("TEMPERATURE", "0.7"))
    SEED: int = int(os.getenv("SEED", "0"))

    # Session history
    STORE_PATH: str = os.getenv("STORE_PATH", "localchat.db")
    HISTORY_CAPACITY: int = int(os.getenv("HISTORY_CAPACITY", "20"))
    TITLE_MAX_CHARS: int = int(os.getenv("TITLE_MAX_CHARS", "50"))
    SAVE_DEBOUNCE_SECONDS: float = float(os.getenv("SAVE_DEBOUNCE_SECONDS", "1.0"))

    # Startup
    LOAD_WARNING_SECONDS: float = float(os.getenv("LOAD_WARNING_SECONDS", "30"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def summary(cls) -> dict:
        """
        Get a summary of current configuration.

        Returns:
            Dictionary with the main config values
        """
        return {
            "preferred_models": list(cls.PREFERRED_MODELS),
            "fallback_model_id": cls.FALLBACK_MODEL_ID,
            "use_gpu": cls.USE_GPU,
            "torch_dtype": cls.TORCH_DTYPE,
            "temperature": cls.TEMPERATURE,
            "seed": cls.SEED,
            "store_path": cls.STORE_PATH,
            "history_capacity": cls.HISTORY_CAPACITY,
        }


# Singleton instance
config = Config()
