"""
Utility functions for the news RAG chatbot.

This module provides:
- Environment variable validation and loading
- Logging configuration with structured JSON output
- Timing utilities for performance measurement
- Input sanitization for safe logging
"""

import os
import re
import sys
import time
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from dotenv import load_dotenv
from loguru import logger


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


# Required environment variables
REQUIRED_VARS = [
    "JINA_API_KEY",
    "OPENROUTER_API_KEY",
    "PINECONE_API_KEY",
    "PINECONE_INDEX_NAME",
    "REDIS_URL",
]

# Optional environment variables with defaults
OPTIONAL_VARS: Dict[str, Any] = {
    "EMBEDDING_MODEL": "jina-embeddings-v2-base-en",
    "EMBEDDING_DIMENSION": 768,
    "EMBEDDING_TIMEOUT": 15,
    "GENERATION_MODEL": "google/gemini-flash-1.5",
    "GENERATION_BASE_URL": "https://openrouter.ai/api/v1",
    "GENERATION_TIMEOUT": 30,
    "GENERATION_MAX_RETRIES": 3,
    "GENERATION_RETRY_DELAY": 2.0,
    "RETRIEVAL_TOP_K": 5,
    "RELEVANCE_THRESHOLD": 0.7,
    "VECTOR_SEARCH_TIMEOUT": 10,
    "SESSION_TTL_SECONDS": 3600,
    "CACHE_TIMEOUT": 5,
    "ENVIRONMENT": "development",
    "CORS_ORIGINS": "http://localhost:3000",
    "LOG_LEVEL": "INFO",
}

INT_VARS = {
    "EMBEDDING_DIMENSION", "EMBEDDING_TIMEOUT", "GENERATION_TIMEOUT",
    "GENERATION_MAX_RETRIES", "RETRIEVAL_TOP_K", "VECTOR_SEARCH_TIMEOUT",
    "SESSION_TTL_SECONDS", "CACHE_TIMEOUT",
}
FLOAT_VARS = {"GENERATION_RETRY_DELAY", "RELEVANCE_THRESHOLD"}


def setup_logging(level: str = "INFO") -> None:
    """
    Configure structured JSON logging with Loguru.
    """
    logger.remove()
    logger.add(
        sys.stdout,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}",
        level=level,
        serialize=True
    )

    logger.info("Logging configuration complete", level=level)


def load_and_validate_env() -> Dict[str, Any]:
    """
    Load and validate all required environment variables.

    Returns:
        Dict[str, Any]: Configuration dictionary with validated values

    Raises:
        ConfigurationError: If required environment variables are missing
    """
    load_dotenv()

    config: Dict[str, Any] = {}

    for var in REQUIRED_VARS:
        value = os.getenv(var)
        if not value:
            raise ConfigurationError(f"Required environment variable {var} is not set")
        config[var] = value

    for var, default in OPTIONAL_VARS.items():
        value = os.getenv(var, default)
        if var in INT_VARS:
            try:
                config[var] = int(value)
            except (TypeError, ValueError):
                logger.warning(f"Invalid value for {var}: {value}, using default: {default}")
                config[var] = default
        elif var in FLOAT_VARS:
            try:
                config[var] = float(value)
            except (TypeError, ValueError):
                logger.warning(f"Invalid value for {var}: {value}, using default: {default}")
                config[var] = default
        else:
            config[var] = value

    logger.info("Environment configuration loaded and validated")
    return config


def sanitize_for_logging(text: str, max_length: int = 200) -> str:
    """
    Sanitize user input for safe logging by masking secrets and truncating.

    Args:
        text: Input text to sanitize
        max_length: Maximum length of sanitized text

    Returns:
        str: Sanitized text safe for logging
    """
    if not text:
        return ""

    sensitive_patterns = [
        r'sk-[a-zA-Z0-9]+',
        r'jina_[a-zA-Z0-9]+',
        r'Bearer\s+[a-zA-Z0-9]+',
        r'\b[A-Za-z0-9]{32,}\b'
    ]

    sanitized = text
    for pattern in sensitive_patterns:
        sanitized = re.sub(pattern, '[REDACTED]', sanitized, flags=re.IGNORECASE)

    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."

    return sanitized


class Timer:
    """Context manager for timing operations."""

    def __init__(self, operation_name: str = "operation"):
        self.operation_name = operation_name
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        logger.debug(f"Starting {self.operation_name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.perf_counter()

        if exc_type is None:
            logger.debug(f"Completed {self.operation_name}", duration_ms=self.duration_ms)
        else:
            logger.warning(f"Failed {self.operation_name}", duration_ms=self.duration_ms, error=str(exc_val))

    @property
    def duration_ms(self) -> float:
        """Get duration in milliseconds."""
        if self.start_time is not None and self.end_time is not None:
            return round((self.end_time - self.start_time) * 1000, 2)
        return 0.0


def utc_now() -> datetime:
    """Current datetime in UTC."""
    return datetime.now(timezone.utc)


def get_current_timestamp() -> str:
    """
    Get current timestamp in ISO format with UTC timezone.

    Returns:
        str: Current timestamp in ISO format with timezone
    """
    return utc_now().isoformat()


def elapsed_ms(start: float) -> int:
    """Milliseconds since a `time.perf_counter()` reading."""
    return int((time.perf_counter() - start) * 1000)


# Global configuration instance
_config: Optional[Dict[str, Any]] = None


def get_config() -> Dict[str, Any]:
    """
    Get the global configuration, loading it if not already loaded.

    Returns:
        Dict[str, Any]: Configuration dictionary
    """
    global _config
    if _config is None:
        _config = load_and_validate_env()
    return _config


def initialize_app() -> Dict[str, Any]:
    """
    Initialize the application with logging and configuration.
    Call this at app startup.
    """
    config = get_config()
    setup_logging(config.get("LOG_LEVEL", "INFO"))

    logger.info(
        "Application initialization complete",
        models={
            "embedding": config["EMBEDDING_MODEL"],
            "generation": config["GENERATION_MODEL"],
        },
        retrieval_settings={
            "top_k": config["RETRIEVAL_TOP_K"],
            "threshold": config["RELEVANCE_THRESHOLD"],
        },
        environment=config["ENVIRONMENT"],
    )
    return config
