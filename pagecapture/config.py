from pathlib import Path
from typing import List

from pydantic import BaseModel, Field
from dotenv import load_dotenv
import os

# Project root: parent of pagecapture/
_PROJECT_ROOT = Path(__file__).resolve().parent.parent

load_dotenv(_PROJECT_ROOT / ".env")

_TRUTHY = ("1", "true", "yes", "on")


class Settings(BaseModel):
    playwright_headless: bool = Field(True, alias="PLAYWRIGHT_HEADLESS")
    capture_timeout_ms: int = Field(45000, alias="CAPTURE_TIMEOUT_MS")
    step_timeout_ms: int = Field(10000, alias="STEP_TIMEOUT_MS")
    viewport_width: int = Field(1280, alias="VIEWPORT_WIDTH")
    viewport_height: int = Field(720, alias="VIEWPORT_HEIGHT")
    storage_dir: str = Field("captures", alias="CAPTURE_STORAGE_DIR")
    persist_captures: bool = Field(False, alias="PERSIST_CAPTURES")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_path: str = Field("logs", alias="LOG_PATH")
    max_retries: int = Field(3, alias="RETRY_MAX_RETRIES")
    retry_initial_delay_ms: int = Field(1000, alias="RETRY_INITIAL_DELAY_MS")
    retry_max_delay_ms: int = Field(10000, alias="RETRY_MAX_DELAY_MS")
    max_html_chars: int = Field(200_000, alias="MAX_HTML_CHARS")
    max_text_chars: int = Field(100_000, alias="MAX_TEXT_CHARS")
    max_dom_nodes: int = Field(5000, alias="MAX_DOM_NODES")
    host: str = Field("127.0.0.1", alias="HOST")
    port: int = Field(8000, alias="PORT")
    cors_origins: List[str] = Field(default_factory=list, alias="CORS_ORIGINS")

    model_config = {"populate_by_name": True}

    @classmethod
    def from_env(cls):
        data = {
            "PLAYWRIGHT_HEADLESS": os.getenv("PLAYWRIGHT_HEADLESS", "true"),
            "CAPTURE_TIMEOUT_MS": os.getenv("CAPTURE_TIMEOUT_MS", "45000"),
            "STEP_TIMEOUT_MS": os.getenv("STEP_TIMEOUT_MS", "10000"),
            "VIEWPORT_WIDTH": os.getenv("VIEWPORT_WIDTH", "1280"),
            "VIEWPORT_HEIGHT": os.getenv("VIEWPORT_HEIGHT", "720"),
            "CAPTURE_STORAGE_DIR": os.getenv("CAPTURE_STORAGE_DIR", "captures"),
            "PERSIST_CAPTURES": os.getenv("PERSIST_CAPTURES", "false"),
            "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO"),
            "LOG_PATH": os.getenv("LOG_PATH", "logs"),
            "RETRY_MAX_RETRIES": os.getenv("RETRY_MAX_RETRIES", "3"),
            "RETRY_INITIAL_DELAY_MS": os.getenv("RETRY_INITIAL_DELAY_MS", "1000"),
            "RETRY_MAX_DELAY_MS": os.getenv("RETRY_MAX_DELAY_MS", "10000"),
            "MAX_HTML_CHARS": os.getenv("MAX_HTML_CHARS", "200000"),
            "MAX_TEXT_CHARS": os.getenv("MAX_TEXT_CHARS", "100000"),
            "MAX_DOM_NODES": os.getenv("MAX_DOM_NODES", "5000"),
            "HOST": os.getenv("HOST", "127.0.0.1"),
            "PORT": os.getenv("PORT", "8000"),
            "CORS_ORIGINS": os.getenv("CORS_ORIGINS", ""),
        }
        for key in ("PLAYWRIGHT_HEADLESS", "PERSIST_CAPTURES"):
            data[key] = str(data[key]).lower() in _TRUTHY  # type: ignore
        data["LOG_LEVEL"] = str(data["LOG_LEVEL"]).upper()
        data["CORS_ORIGINS"] = [origin.strip() for origin in str(data["CORS_ORIGINS"]).split(",") if origin.strip()]  # type: ignore
        for key in ("CAPTURE_STORAGE_DIR", "LOG_PATH"):
            path = data[key]
            if not Path(path).is_absolute():
                path = str(_PROJECT_ROOT / path)
            data[key] = path
        return cls(**data)  # type: ignore


settings = Settings.from_env()
