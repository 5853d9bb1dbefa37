import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "CHAPTER_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = ("model_api_key", "tavily_api_key", "drive_api_key")

DEFAULT_WEB_SEARCH_SITES = [
    "gdgoc-ietdavv.netlify.app",
    "gdsc.ietdavv.edu.in",
    "ietdavv.edu.in",
    "instagram.com/gdgoc.ietdavv",
    "linkedin.com/company/gdgoc-iet-davv",
    "vision.hack2skill.com/event/gdgoc-25-ietdavv",
]


class AppSettings(BaseModel):
    # Generative model (OpenAI-compatible chat completions endpoint)
    model_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai"
    model_id: str = "gemini-2.5-flash-lite"
    model_api_key: Optional[str] = None
    model_temperature: float = 0.7
    assistant_name: str = "GDGoC IET DAVV Assistant"

    # Web search
    tavily_api_key: Optional[str] = None
    web_search_sites: List[str] = Field(default_factory=lambda: list(DEFAULT_WEB_SEARCH_SITES))
    web_search_phrase: str = "gdgoc iet davv"
    web_search_depth: str = "advanced"
    web_search_max_results: int = 5

    # Drive image folder
    drive_api_key: Optional[str] = None
    drive_folder_id: str = "14yabXrxu1g5owt2fbIwIWP06svWo_GaO"

    # Raw sources and snapshot files
    csv_data_dir: str = "data"
    json_data_dir: str = "data"
    qa_data_dir: str = "data"
    qa_file: str = "training_qa_pairs.jsonl"
    csv_index_path: str = "csv-index.json"
    json_index_path: str = "json-index.json"
    qa_index_path: str = "qa-index.json"
    drive_index_path: str = "drive-images.json"

    # Response loop tuning
    flush_interval_s: float = 1.0
    throttle_interval_s: float = 5.0
    retry_max_attempts: int = 3
    retry_base_delay_s: float = 1.0
    max_image_attachments: int = 3

    # Agent lifecycle
    inactivity_threshold_s: float = 8 * 60 * 60
    sweep_interval_s: float = 5.0

    log_level: str = "INFO"

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "model_base_url": os.getenv("MODEL_BASE_URL"),
        "model_id": os.getenv("MODEL_ID"),
        "model_api_key": os.getenv("GEMINI_API_KEY") or os.getenv("MODEL_API_KEY"),
        "model_temperature": os.getenv("MODEL_TEMPERATURE"),
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "web_search_sites": os.getenv("WEB_SEARCH_SITES"),
        "web_search_phrase": os.getenv("WEB_SEARCH_PHRASE"),
        "drive_api_key": os.getenv("GOOGLE_DRIVE_API_KEY"),
        "drive_folder_id": os.getenv("DRIVE_IMAGE_FOLDER_ID"),
        "csv_data_dir": os.getenv("CSV_DATA_DIR"),
        "json_data_dir": os.getenv("JSON_DATA_DIR"),
        "qa_data_dir": os.getenv("QA_DATA_DIR"),
        "qa_file": os.getenv("QA_FILE"),
        "csv_index_path": os.getenv("CSV_INDEX_PATH"),
        "json_index_path": os.getenv("JSON_INDEX_PATH"),
        "qa_index_path": os.getenv("QA_INDEX_PATH"),
        "drive_index_path": os.getenv("DRIVE_IMAGE_INDEX_PATH"),
        "flush_interval_s": os.getenv("FLUSH_INTERVAL_S"),
        "throttle_interval_s": os.getenv("THROTTLE_INTERVAL_S"),
        "retry_max_attempts": os.getenv("RETRY_MAX_ATTEMPTS"),
        "retry_base_delay_s": os.getenv("RETRY_BASE_DELAY_S"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("model_temperature", "flush_interval_s", "throttle_interval_s", "retry_base_delay_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    if "retry_max_attempts" in cleaned:
        cleaned["retry_max_attempts"] = int(cleaned["retry_max_attempts"])
    if "web_search_sites" in cleaned:
        cleaned["web_search_sites"] = [s.strip() for s in cleaned["web_search_sites"].split(",") if s.strip()]
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
    # Secrets usually live in the environment only.
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
