import logging
import sys
from pathlib import Path
from pydantic_settings import BaseSettings
from typing import Optional

class Settings(BaseSettings):
    # Server Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8765

    # Narrative Generator (OpenAI-compatible chat completions)
    llm_base_url: str = "https://api.cometapi.com/v1"
    llm_model: str = "grok-4-1-fast-non-reasoning"
    llm_api_key: Optional[str] = None
    llm_timeout: float = 60.0
    llm_temperature: float = 0.6
    llm_max_tokens: int = 2000
    llm_json_mode: bool = True

    # Turn pipeline
    generation_attempts: int = 2

    # Sessions / persistence
    saves_directory: Path = Path("saves")
    max_sessions: int = 100
    auto_save: bool = False

    # Logging
    log_level: str = "INFO"
    log_file: Optional[Path] = Path("llm_debug.log")
    ai_error_log: Optional[Path] = Path("ai_errors.log")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

# Get settings instance
settings = Settings()


def setup_logging() -> None:
    """Configure root logging plus the raw-LLM and parse-failure audit loggers."""
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    llm_logger = logging.getLogger("llm_responses")
    llm_logger.setLevel(logging.INFO)
    llm_logger.propagate = False
    if settings.log_file:
        handler = logging.FileHandler(settings.log_file, encoding='utf-8')
    else:
        handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    llm_logger.addHandler(handler)

    audit_logger = logging.getLogger("ai_parse_failures")
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False
    if settings.ai_error_log:
        audit_handler = logging.FileHandler(settings.ai_error_log, encoding='utf-8')
    else:
        audit_handler = logging.StreamHandler(sys.stderr)
    audit_handler.setFormatter(logging.Formatter('%(asctime)s - %(message)s'))
    audit_logger.addHandler(audit_handler)

    logging.basicConfig(level=settings.log_level.upper(), format='%(asctime)s - %(levelname)s - %(message)s')
