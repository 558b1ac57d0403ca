import json
import logging
import os
from typing import Any, Dict, Optional

from src.copilot.config import DEFAULT_MODEL, SETTINGS_FILE, STREAM_CONFIG

logger = logging.getLogger(__name__)

API_KEY_ENV_VAR = "OPENROUTER_API_KEY"

# Service versions the assistant understands; anything else disables it.
AI_VERSIONS = ("disabled", "openrouter")

# Older releases stored bare model names or now-retired service versions.
LEGACY_MODEL_ALIASES: Dict[str, str] = {
    "gpt-3": "openai/gpt-3.5-turbo",
    "gpt-4": "openai/gpt-4",
}
LEGACY_VERSION_ALIASES: Dict[str, str] = {
    "full-beta": "openrouter",
    "enterprise": "openrouter",
}


def _default_settings() -> Dict[str, Any]:
    return {
        "version": "openrouter",
        "api_key": "",
        "verified": False,
        "endpoint": STREAM_CONFIG["endpoint"],
        "model": DEFAULT_MODEL,
    }


def _normalize_version(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        return "openrouter"
    version = value.strip().lower()
    version = LEGACY_VERSION_ALIASES.get(version, version)
    return version if version in AI_VERSIONS else "disabled"


def _normalize_model(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        return DEFAULT_MODEL
    model = value.strip()
    return LEGACY_MODEL_ALIASES.get(model, model)


def _normalize_endpoint(value: Any) -> str:
    if isinstance(value, str) and value.strip().startswith(("http://", "https://")):
        return value.strip()
    return STREAM_CONFIG["endpoint"]


def load_user_settings() -> Dict[str, Any]:
    """
    Load user settings from disk, normalizing legacy payloads into the current format.
    """
    settings = _default_settings()

    if not SETTINGS_FILE.exists():
        return settings

    try:
        with open(SETTINGS_FILE, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (IOError, json.JSONDecodeError) as exc:
        logger.warning("Failed to read user settings from %s: %s", SETTINGS_FILE, exc)
        return settings

    if not isinstance(data, dict):
        logger.warning("User settings file %s does not contain a JSON object.", SETTINGS_FILE)
        return settings

    settings["version"] = _normalize_version(data.get("version"))
    settings["model"] = _normalize_model(data.get("model"))
    settings["endpoint"] = _normalize_endpoint(data.get("endpoint"))
    settings["verified"] = bool(data.get("verified", False))

    api_key = data.get("api_key")
    if isinstance(api_key, str):
        settings["api_key"] = api_key.strip()

    return settings


def save_user_settings(settings: Dict[str, Any]) -> None:
    """
    Persist the settings payload to disk.
    """
    normalized = _default_settings()
    normalized.update({k: v for k, v in settings.items() if k in normalized})

    payload: Dict[str, Any] = {
        "version": _normalize_version(normalized.get("version")),
        "api_key": str(normalized.get("api_key") or "").strip(),
        "verified": bool(normalized.get("verified")),
        "endpoint": _normalize_endpoint(normalized.get("endpoint")),
        "model": _normalize_model(normalized.get("model")),
    }

    SETTINGS_FILE.parent.mkdir(parents=True, exist_ok=True)
    with open(SETTINGS_FILE, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=4)

    logger.info("User settings saved to %s", SETTINGS_FILE)


def update_user_settings(updates: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge and persist setting updates.
    """
    settings = load_user_settings()
    settings.update({k: v for k, v in updates.items() if k in settings})
    save_user_settings(settings)
    return load_user_settings()


def get_api_key(settings: Optional[Dict[str, Any]] = None) -> Optional[str]:
    """
    Resolve the API key. The environment variable takes precedence over the settings file.
    """
    api_key = os.getenv(API_KEY_ENV_VAR)
    if api_key and api_key.strip():
        return api_key.strip()

    if settings is None:
        settings = load_user_settings()
    stored = str(settings.get("api_key") or "").strip()
    return stored or None


def get_model(settings: Optional[Dict[str, Any]] = None) -> str:
    if settings is None:
        settings = load_user_settings()
    return _normalize_model(settings.get("model"))


def get_endpoint(settings: Optional[Dict[str, Any]] = None) -> str:
    if settings is None:
        settings = load_user_settings()
    return _normalize_endpoint(settings.get("endpoint"))


def is_enabled(settings: Optional[Dict[str, Any]] = None) -> bool:
    """
    The assistant is enabled when the openrouter version is selected.
    """
    if settings is None:
        settings = load_user_settings()
    return _normalize_version(settings.get("version")) == "openrouter"
