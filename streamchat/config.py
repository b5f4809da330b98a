"""Configuration management for the chat client."""

import os
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_CONTINUATIONS = 3

DEFAULT_SUMMARY_PROMPT = (
    "Based on the above dialogue content, summarize a concise dialogue title in "
    "the same language as the content, not exceeding 10 characters. Return the "
    "title text directly without including quotation marks, explanations, or "
    "punctuation."
)


class ChatSettings(BaseModel):
    """Runtime-editable request settings."""
    model_config = ConfigDict(validate_assignment=True)

    api_endpoint: str = ""
    api_key: str | None = None
    model: str = ""
    custom_models: list[str] = Field(default_factory=list)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    system_prompt: str = ""
    max_context_length: int = 20
    enable_streaming: bool = True
    auto_continue_stream: bool = False
    continuation_delay: float = Field(default=0.8, ge=0.0)
    max_continuations: int = Field(default=MAX_CONTINUATIONS, ge=0, le=MAX_CONTINUATIONS)
    render_interval: float = Field(default=1 / 60, gt=0.0)
    enable_auto_summary: bool = True
    summary_prompt: str = DEFAULT_SUMMARY_PROMPT
    summary_temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_title_length: int = Field(default=50, ge=4)

    @field_validator("max_context_length", mode="before")
    @classmethod
    def _clamp_context_length(cls, value: Any) -> int:
        try:
            number = int(value)
        except (TypeError, ValueError):
            return 20
        return min(100, max(1, number))


class Configuration:
    """Manages configuration and environment variables for the chat client."""

    def __init__(self, config_path: str | None = None) -> None:
        """Initialize configuration from YAML and environment variables."""
        self.load_env()  # Load .env for API keys
        self.config_path = config_path or os.path.join(
            os.path.dirname(__file__), "config.yaml"
        )
        self._config = self._load_yaml_config(self.config_path)

    @classmethod
    def from_file(cls, file_path: str) -> "Configuration":
        """Load configuration from an explicit YAML file."""
        return cls(config_path=file_path)

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    @staticmethod
    def _load_yaml_config(config_path: str) -> dict[str, Any]:
        """Load configuration from YAML file."""
        with open(config_path, encoding="utf-8") as file:
            config = yaml.safe_load(file)
            if not isinstance(config, dict):
                raise ValueError(
                    f"Config file must be YAML dict, got {type(config)}"
                )
            return config

    @property
    def llm_api_key(self) -> str | None:
        """Get the API key for the configured endpoint.

        Local endpoints usually need none, so a missing key is not an error.

        Returns:
            The API key, or None when neither the environment nor the YAML
            file provides one.
        """
        env_key = os.getenv("LLM_API_KEY")
        if env_key:
            return env_key
        return self.get_llm_config().get("api_key") or None

    def get_config_dict(self) -> dict[str, Any]:
        """Get the full configuration dictionary.

        Returns:
            The complete configuration dictionary.
        """
        return self._config

    def get_llm_config(self) -> dict[str, Any]:
        """Get LLM endpoint configuration from YAML.

        Returns:
            LLM configuration dictionary.
        """
        return self._config.get("llm", {})

    def get_streaming_config(self) -> dict[str, Any]:
        """Get streaming configuration from YAML.

        Returns:
            Streaming configuration dictionary with validated values.

        Raises:
            ValueError: If continuation settings are invalid.
        """
        streaming_config = self._config.get("streaming", {})
        max_continuations = streaming_config.get("max_continuations", MAX_CONTINUATIONS)
        if not 0 <= max_continuations <= MAX_CONTINUATIONS:
            raise ValueError(
                f"streaming.max_continuations must be between 0 and {MAX_CONTINUATIONS}"
            )
        if streaming_config.get("continuation_delay", 0.8) < 0:
            raise ValueError("streaming.continuation_delay must be >= 0")
        return streaming_config

    def get_history_config(self) -> dict[str, Any]:
        """Get session store configuration from YAML.

        Returns:
            History configuration dictionary.

        Raises:
            ValueError: If the backend is not supported.
        """
        history_config = self._config.get("history", {})
        backend = history_config.get("backend", "json")
        if backend not in ("json", "sqlite"):
            raise ValueError(
                f"history.backend must be 'json' or 'sqlite', got '{backend}'"
            )
        return history_config

    def get_summary_config(self) -> dict[str, Any]:
        return self._config.get("summary", {})

    def get_websocket_config(self) -> dict[str, Any]:
        return self._config.get("websocket", {})

    def get_logging_config(self) -> dict[str, Any]:
        return self._config.get("logging", {})

    def get_chat_settings(self) -> ChatSettings:
        """Build validated runtime settings from the llm, streaming and summary sections."""
        llm_config = self.get_llm_config()
        streaming_config = self.get_streaming_config()
        summary_config = self.get_summary_config()

        values: dict[str, Any] = {
            key: llm_config[key]
            for key in (
                "api_endpoint", "model", "custom_models", "temperature", "system_prompt",
                "max_context_length", "enable_streaming", "auto_continue_stream",
            )
            if key in llm_config and llm_config[key] is not None
        }
        values.update({
            key: streaming_config[key]
            for key in ("continuation_delay", "max_continuations", "render_interval")
            if key in streaming_config
        })
        summary_keys = {
            "enable_auto_summary": "enable_auto_summary",
            "summary_prompt": "summary_prompt",
            "temperature": "summary_temperature",
            "max_title_length": "max_title_length",
        }
        values.update({
            target: summary_config[source]
            for source, target in summary_keys.items()
            if source in summary_config
        })
        values["api_key"] = self.llm_api_key
        return ChatSettings(**values)
