import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "RELAY_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = (
    "anthropic_api_key",
    "openai_api_key",
    "grok_api_key",
    "gemini_api_key",
    "perplexity_api_key",
    "elevenlabs_api_key",
)


class PacingConfig(BaseModel):
    """Delays between paced writes, in milliseconds. Zero disables pacing."""

    search_chunk_size: int = 50
    search_chunk_delay_ms: int = 30
    research_step_delay_ms: int = 500
    research_answer_delay_ms: int = 100
    file_emit_delay_ms: int = 100


class AppSettings(BaseModel):
    # Provider credentials; presence is the availability switch.
    anthropic_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    grok_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    perplexity_api_key: Optional[str] = None
    elevenlabs_api_key: Optional[str] = None

    anthropic_base_url: str = "https://api.anthropic.com/v1"
    openai_base_url: str = "https://api.openai.com/v1"
    grok_base_url: str = "https://api.x.ai/v1"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    perplexity_base_url: str = "https://api.perplexity.ai"
    elevenlabs_base_url: str = "https://api.elevenlabs.io/v1"

    # Substring of the requested model id -> model family.
    model_routes: Dict[str, str] = Field(
        default_factory=lambda: {
            "grok": "grok",
            "gemini": "gemini",
            "claude": "claude",
            "gpt": "openai",
            "o3": "openai",
        }
    )
    # Requested model id -> upstream model id.
    model_aliases: Dict[str, str] = Field(
        default_factory=lambda: {
            "gpt-5": "gpt-4-turbo-preview",
            "claude-opus-4-1": "claude-3-opus-20240229",
        }
    )

    research_model: str = "claude-3-opus-20240229"
    code_model: str = "claude-3-5-sonnet-20241022"
    voice_model: str = "gpt-4o-mini"
    vision_model: str = "gemini-2.0-flash-exp"
    search_model: str = "sonar-pro"
    search_recency_filter: str = "month"
    speech_model: str = "eleven_turbo_v2_5"
    speech_voice_id: str = "21m00Tcm4TlvDq8ikWAM"

    default_temperature: float = 0.7
    code_temperature: float = 0.3
    default_max_tokens: int = 4096
    vision_max_tokens: int = 2048
    research_max_steps: int = 5
    request_timeout_s: float = 120.0

    pacing: PacingConfig = Field(default_factory=PacingConfig)

    host: str = "0.0.0.0"
    port: int = 8000

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _first_env(*names: str) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "anthropic_api_key": _first_env("ANTHROPIC_API_KEY"),
        "openai_api_key": _first_env("OPENAI_API_KEY"),
        "grok_api_key": _first_env("GROK_API_KEY", "XAI_API_KEY"),
        "gemini_api_key": _first_env("GEMINI_API_KEY", "GOOGLE_API_KEY"),
        "perplexity_api_key": _first_env("PERPLEXITY_API_KEY"),
        "elevenlabs_api_key": _first_env("ELEVENLABS_API_KEY"),
        "anthropic_base_url": os.getenv("ANTHROPIC_BASE_URL"),
        "openai_base_url": os.getenv("OPENAI_BASE_URL"),
        "grok_base_url": os.getenv("GROK_BASE_URL"),
        "gemini_base_url": os.getenv("GEMINI_BASE_URL"),
        "perplexity_base_url": os.getenv("PERPLEXITY_BASE_URL"),
        "elevenlabs_base_url": os.getenv("ELEVENLABS_BASE_URL"),
        "research_model": os.getenv("RESEARCH_MODEL"),
        "code_model": os.getenv("CODE_MODEL"),
        "voice_model": os.getenv("VOICE_MODEL"),
        "vision_model": os.getenv("VISION_MODEL"),
        "research_max_steps": os.getenv("RESEARCH_MAX_STEPS"),
        "request_timeout_s": os.getenv("REQUEST_TIMEOUT_S"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "research_max_steps" in cleaned:
        cleaned["research_max_steps"] = int(cleaned["research_max_steps"])
    if "request_timeout_s" in cleaned:
        cleaned["request_timeout_s"] = float(cleaned["request_timeout_s"])
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    # An empty key in config.json should not hide a key set in the environment.
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)

