"""
Configuration Settings.
"""

from dataclasses import dataclass
from pydantic_settings import BaseSettings
from typing import Optional


@dataclass(frozen=True)
class ChatConfig:
    """
    Explicit configuration handed to the session manager and agent console.

    Core logic only ever sees this struct; it never reads the environment.
    """
    api_key: str
    agent_identity: str = "sales-agent"
    issuer_endpoint: Optional[str] = None


class Settings(BaseSettings):
    """Application settings."""

    # App info
    app_name: str = "ShopChat"
    app_version: str = "1.0.0"
    debug: bool = True

    # Messaging backend account
    stream_api_key: str = "shopchat-dev"
    stream_api_secret: str = "your-secret-key-change-this-in-production"
    token_algorithm: str = "HS256"
    token_expire_minutes: int = 60 * 24  # 1 day

    # Sales associate
    agent_identity: str = "sales-agent"
    agent_token: Optional[str] = None  # pre-issued token for the console, if any
    admin_api_key: Optional[str] = None  # required to mint tokens for the agent identity

    # Endpoints used by remote clients
    issuer_endpoint: str = "http://localhost:8000/api/stream-token"
    registry_endpoint: str = "http://localhost:8000"

    # Storage
    local_storage_path: str = "./data"

    # CORS
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Logging configuration
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_file_path: str = "./logs/shopchat.log"
    log_file_enabled: bool = True
    log_console_enabled: bool = True
    log_json_format: bool = True  # JSON format for files, human-readable for console
    log_api_requests: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = False

    def chat_config(self) -> ChatConfig:
        """Build the configuration struct injected into core components."""
        return ChatConfig(
            api_key=self.stream_api_key,
            agent_identity=self.agent_identity,
            issuer_endpoint=self.issuer_endpoint,
        )


settings = Settings()
