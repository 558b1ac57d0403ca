from pathlib import Path

# This calculates the absolute path to the project's root directory
# It starts from this file's location (.../src/copilot/config.py) and goes up three levels.
ROOT_DIR = Path(__file__).resolve().parent.parent.parent

# All other important paths are built from the ROOT_DIR to ensure they are always correct.
LOGS_DIR = ROOT_DIR / "logs"
SETTINGS_FILE = ROOT_DIR / "copilot_settings.json"

# Exponential backoff shared by every call site that talks to the AI service.
RETRY_CONFIG = {
    "max_retries": 3,
    "initial_delay": 1.0,  # seconds
    "max_delay": 10.0,
    "multiplier": 2.0,
    "jitter_max": 0.5,
}

STREAM_CONFIG = {
    "endpoint": "https://openrouter.ai/api/v1/chat/completions",
    "connect_timeout": 10.0,
    "read_timeout": 60.0,
    "content_update_interval": 0.016,  # ~60fps
}

DEFAULT_MODEL = "openai/gpt-4"

# Conversation memory limits.
MAX_MESSAGES = 50
TRUNCATE_TO = 30

# Token budgeting for history truncation.
CHARS_PER_TOKEN = 4
RESPONSE_RESERVE = 1000
DEFAULT_MODEL_TOKEN_LIMIT = 4096
MIN_HISTORY_TOKENS = 100
MODEL_TOKEN_LIMITS = {
    "gpt-3.5-turbo": 4096,
    "gpt-4": 8192,
    "openai/gpt-3.5-turbo": 4096,
    "openai/gpt-4": 8192,
}
