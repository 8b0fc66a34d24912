"""
Configuration module for the document labeler.

This module centralizes the loading and validation of all configuration
parameters from environment variables. It provides a single `Settings`
class that acts as a container for all configurable values, ensuring
that they are defined in one place and can be easily imported and used
throughout the application.
"""

import os
from typing import Literal

import openai

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


class Settings:
    """
    A container for all configuration settings, loaded from environment variables.

    This class centralizes configuration, providing default values for optional
    settings and raising errors for missing required settings.
    """

    # --- LLM Provider Configuration ---
    LLM_PROVIDER: Literal["openai", "ollama"]
    OLLAMA_BASE_URL: str | None
    OPENAI_API_KEY: str | None

    # --- Model Selection ---
    AI_MODELS: list[str]

    # --- Inference Limits ---
    REQUEST_TIMEOUT: int
    MAX_RETRIES: int
    MAX_RETRY_BACKOFF_SECONDS: int
    SYNTHESIS_MAX_CHARS: int
    SYNTHESIS_MAX_TOKENS: int | None

    # --- Storage ---
    LABELS_PATH: str
    RESULTS_PATH: str
    RESULTS_INCLUDE_LABEL: bool
    RECORD_UNRESOLVED: bool

    # --- Rule Engine ---
    RULE_MAX_LENGTH: int

    # --- Logging ---
    LOG_LEVEL: str
    LOG_FORMAT: Literal["console", "json"]

    def __init__(self):
        """
        Loads settings from environment variables and performs validation.
        """
        # --- LLM Provider Configuration ---
        self.LLM_PROVIDER = os.getenv("LLM_PROVIDER", "openai").strip().lower()
        if self.LLM_PROVIDER not in ("openai", "ollama"):
            raise ValueError("LLM_PROVIDER must be 'openai' or 'ollama'")

        # --- Model Selection ---
        if self.LLM_PROVIDER == "ollama":
            self.OLLAMA_BASE_URL = os.getenv(
                "OLLAMA_BASE_URL", "http://localhost:11434/v1/"
            )
            self.OPENAI_API_KEY = None  # Not used for Ollama
            default_models = "gemma3:27b"
        else:  # openai
            self.OLLAMA_BASE_URL = None
            self.OPENAI_API_KEY = self._get_required_env("OPENAI_API_KEY")
            default_models = "gpt-5-mini,o4-mini"

        self.AI_MODELS = _parse_list(os.getenv("AI_MODELS", default_models))
        if not self.AI_MODELS:
            raise ValueError("AI_MODELS must name at least one model")

        # --- Inference Limits ---
        self.REQUEST_TIMEOUT = int(os.getenv("REQUEST_TIMEOUT", 180))
        self.MAX_RETRIES = int(os.getenv("MAX_RETRIES", 3))
        self.MAX_RETRY_BACKOFF_SECONDS = int(
            os.getenv("MAX_RETRY_BACKOFF_SECONDS", 30)
        )
        self.SYNTHESIS_MAX_CHARS = int(os.getenv("SYNTHESIS_MAX_CHARS", 12000))
        max_tokens = os.getenv("SYNTHESIS_MAX_TOKENS", "").strip()
        self.SYNTHESIS_MAX_TOKENS = int(max_tokens) if max_tokens else None

        # --- Storage ---
        self.LABELS_PATH = os.getenv("LABELS_PATH", "schemata.json")
        self.RESULTS_PATH = os.getenv("RESULTS_PATH", "results.json")
        self.RESULTS_INCLUDE_LABEL = _parse_bool(
            "RESULTS_INCLUDE_LABEL", os.getenv("RESULTS_INCLUDE_LABEL", "false")
        )
        self.RECORD_UNRESOLVED = _parse_bool(
            "RECORD_UNRESOLVED", os.getenv("RECORD_UNRESOLVED", "false")
        )

        # --- Rule Engine ---
        self.RULE_MAX_LENGTH = int(os.getenv("RULE_MAX_LENGTH", 2000))

        # --- Logging ---
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_FORMAT = os.getenv("LOG_FORMAT", "console").strip().lower()
        if self.LOG_FORMAT not in ("console", "json"):
            raise ValueError("LOG_FORMAT must be 'console' or 'json'")

    def _get_required_env(self, var_name: str) -> str:
        """
        Gets a required environment variable, raising an error if it's not set.
        """
        value = os.getenv(var_name)
        if value is None:
            raise ValueError(f"Required environment variable '{var_name}' is not set.")
        return value


def _parse_list(value: str) -> list[str]:
    """Split a comma-separated value, dropping blanks and duplicates."""
    items = []
    for item in value.split(","):
        item = item.strip()
        if item and item not in items:
            items.append(item)
    return items


def _parse_bool(name: str, value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got '{value}'")


def setup_libraries(settings: Settings) -> None:
    """
    Configures third-party libraries based on the application settings.
    """
    if settings.LLM_PROVIDER == "ollama":
        openai.base_url = settings.OLLAMA_BASE_URL
        openai.api_key = "dummy"
    else:
        openai.api_key = settings.OPENAI_API_KEY
