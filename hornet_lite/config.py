"""
Configuration for Hornet Lite
=============================

Environment variables:
- GEMINI_API_KEY: Fallback API key (a key saved in local storage takes precedence)
- GEMINI_MODEL: Model to use (default: gemini-2.0-flash)
- OCR_LANGUAGES: Tesseract language set (default: tha+eng)
- CHUNK_SIZE / CHUNK_OVERLAP: Chunking defaults (default: 500 / 50)
- CONTEXT_MAX_CHARS: Context window ceiling in characters (default: 30000)
- STORAGE_PATH: Local storage directory (default: ./.hornet_storage)
- LOG_LEVEL: Logging level for the CLI (default: INFO)
"""

from typing import Optional, List
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings from environment variables"""

    # Language model (Google Gemini)
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    max_output_tokens: int = 4096
    temperature: float = 0.3
    top_p: float = 0.8
    top_k: int = 40

    # OCR
    ocr_languages: str = "tha+eng"  # Thai + English for mixed documents
    ocr_max_file_size: int = 10 * 1024 * 1024  # 10MB

    # Chunking / context
    chunk_size: int = 500
    chunk_overlap: int = 50
    chunk_preserve_sentences: bool = True
    context_max_chars: int = 30000

    # Local storage
    storage_path: str = "./.hornet_storage"
    storage_quota_bytes: int = 5 * 1024 * 1024

    # Timeouts (seconds)
    llm_timeout: int = 60

    log_level: str = "INFO"

    # Service info
    service_version: str = "1.0.0"

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"
        env_file_encoding = "utf-8"

    def validate_llm_config(self) -> List[str]:
        """Validate LLM configuration, return list of warnings"""
        warnings = []

        if not self.gemini_api_key:
            warnings.append("GEMINI_API_KEY not set (a key can also be saved with `hornet set-key`)")
        elif not self.gemini_api_key.startswith("AIza") or len(self.gemini_api_key) < 30:
            warnings.append("GEMINI_API_KEY format appears invalid")

        if self.chunk_overlap >= self.chunk_size:
            warnings.append("CHUNK_OVERLAP >= CHUNK_SIZE: chunks will be produced without overlap")

        return warnings


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
