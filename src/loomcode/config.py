"""Configuration settings for the application."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    API_PORT: int = 8000
    DEBUG: bool = False
    DATA_DIR: str = "./data"
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical
    WORKSPACE_ROOT: str = "."

    # Model provider configuration
    PROVIDER: str = "ollama"  # Options: ollama, openai-compatible
    MODEL: str = "qwen2.5-coder:latest"
    OLLAMA_URL: str = "http://localhost:11434"
    OPENAI_BASE_URL: str = "http://localhost:8080/v1"
    OPENAI_API_KEY: str | None = None
    REQUEST_TIMEOUT: float = 300.0

    # Agent loop
    MAX_TURNS: int = 64
    CONTEXT_MAX_LINES: int = 256

    # Security
    DECISION_CACHE_TTL: float = 3600.0  # seconds an "allow always" answer stays valid
    MAX_AUDIT_ENTRIES: int = 1000
    APPROVAL_TIMEOUT: float | None = None  # None waits for the user indefinitely
    SANDBOX_ENABLED: bool = True
    SANDBOX_NETWORK_ACCESS: bool = False

    class Config:
        """Configuration for Pydantic settings."""

        # Load environment variables from a .env file
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "LOOMCODE_"


settings = Settings()
