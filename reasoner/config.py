import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, model_validator

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "REASONER_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
MIN_STEPS = 2
MASKED_SECRET = "********"


class AppSettings(BaseModel):
    # Model provider (OpenAI-compatible chat completions endpoint)
    provider_base_url: str = "http://127.0.0.1:1234/v1"
    provider_model: str = "qwen/qwen3-8b"
    provider_api_key: Optional[str] = None
    provider_max_tokens: int = 1200
    provider_temperature: float = 0.1
    input_cost_per_token: float = 0.0000003
    output_cost_per_token: float = 0.0000012

    database_path: str = "reasoner.db"
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"

    # Run budget
    max_steps: int = 6
    max_revisions: int = 1
    planner_timeout_s: float = 30.0
    synthesis_timeout_s: float = 60.0
    repository_timeout_s: float = 10.0
    observation_window: int = 4
    search_limit: int = 8
    confidence_threshold: float = 0.70

    # Quality gate
    acceptance_threshold: float = 0.60
    relation_acceptance_threshold: float = 0.70
    alignment_weight: float = 0.4
    citation_weight: float = 0.4
    cross_document_weight: float = 0.2
    claim_support_ratio: float = 0.5

    model_config = {"protected_namespaces": ()}

    @model_validator(mode="after")
    def _clamp_budget(self) -> "AppSettings":
        if self.max_steps < MIN_STEPS:
            self.max_steps = MIN_STEPS
        if self.max_revisions < 0:
            self.max_revisions = 0
        return self

    def to_safe_dict(self) -> Dict[str, Any]:
        data = self.model_dump()
        if data.get("provider_api_key"):
            data["provider_api_key"] = MASKED_SECRET
        return data


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "provider_base_url": os.getenv("PROVIDER_BASE_URL"),
        "provider_model": os.getenv("PROVIDER_MODEL"),
        "provider_api_key": os.getenv("PROVIDER_API_KEY"),
        "provider_max_tokens": os.getenv("PROVIDER_MAX_TOKENS"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "log_level": os.getenv("LOG_LEVEL"),
        "max_steps": os.getenv("MAX_STEPS"),
        "max_revisions": os.getenv("MAX_REVISIONS"),
        "planner_timeout_s": os.getenv("PLANNER_TIMEOUT_S"),
        "synthesis_timeout_s": os.getenv("SYNTHESIS_TIMEOUT_S"),
        "repository_timeout_s": os.getenv("REPOSITORY_TIMEOUT_S"),
        "acceptance_threshold": os.getenv("ACCEPTANCE_THRESHOLD"),
        "relation_acceptance_threshold": os.getenv("RELATION_ACCEPTANCE_THRESHOLD"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("provider_max_tokens", "port", "max_steps", "max_revisions"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in (
        "planner_timeout_s",
        "synthesis_timeout_s",
        "repository_timeout_s",
        "acceptance_threshold",
        "relation_acceptance_threshold",
    ):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
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
        except ValueError:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    if not merged.get("provider_api_key") and env_data.get("provider_api_key"):
        merged["provider_api_key"] = env_data["provider_api_key"]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
