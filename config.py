# config.py
import os
import json
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
env_path = Path(__file__).parent / '.env'
load_dotenv(dotenv_path=env_path)

def get_env_variable(name: str, default: str = None) -> str:
    """Get environment variable or return default."""
    value = os.getenv(name, default)
    if value is None:
        raise ValueError(f"Environment variable {name} is not set")
    return value

def get_absolute_path(path: str, base_dir: str = None) -> str:
    """Expand ~ and $VARS, then resolve a relative path against base_dir (default: this file's folder)."""
    if not path:
        return path
    path = os.path.expandvars(os.path.expanduser(path))
    base = Path(base_dir) if base_dir else Path(__file__).parent
    return str((base / path).resolve())

# Mirror Configuration
MIRROR_CONFIG_FILE = get_absolute_path(
    get_env_variable('MIRROR_CONFIG_FILE', 'mirror.json')
)
MIRROR_BASE_PATH = os.getenv('MIRROR_BASE_PATH')

# Schedule Configuration
SYNC_SCHEDULE = os.getenv('SYNC_SCHEDULE')
SYNC_TIMEZONE = os.getenv('SYNC_TIMEZONE') or None
FALLBACK_INTERVAL_HOURS = float(get_env_variable('FALLBACK_INTERVAL_HOURS', '12'))

# HTTP Configuration
FETCH_TIMEOUT = float(get_env_variable('FETCH_TIMEOUT', '5'))
USER_AGENT = get_env_variable('USER_AGENT', 'mirror-sync/1.0')

# Logging Configuration
LOG_LEVEL = get_env_variable('LOG_LEVEL', 'INFO')
LOG_DIR = get_absolute_path(get_env_variable('LOG_DIR', 'logs'))
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(log_dir: str = None, level: str = None):
    """Log to LOG_DIR/mirror-sync.log and to the console."""
    log_dir = log_dir or LOG_DIR
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, 'mirror-sync.log')

    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )
    # Connection pool chatter drowns the per-file decisions at INFO.
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('apscheduler').setLevel(logging.WARNING)
    return log_file


def split_schedule(value: str) -> list:
    """Split a ';'-separated list of cron expressions."""
    return [part.strip() for part in value.split(';') if part.strip()]


def _validate_mirror_data(data) -> dict:
    if not isinstance(data, dict):
        raise ValueError("mirror.data must be an object of categories")

    for category, files in data.items():
        if not category or not isinstance(files, dict):
            raise ValueError(f"mirror.data['{category}'] must be an object of filename -> url")
        for filename, url in files.items():
            if not filename or not isinstance(url, str) or not url.strip():
                raise ValueError(f"mirror.data['{category}']['{filename}'] must be a non-empty URL")
    return data


def load_mirror_config(path: str = None) -> dict:
    """
    Load the schedule and the mirror specification.

    The JSON file looks like:
        {"sync": {"schedule": ["0 * * * *"]},
         "mirror": {"base_path": "mirror", "data": {"images": {"logo.png": "https://..."}}}}

    SYNC_SCHEDULE and MIRROR_BASE_PATH override the file's values.
    Returns a dictionary with 'schedule', 'base_path' and 'data'.
    """
    path = path or MIRROR_CONFIG_FILE
    with open(path, 'r', encoding='utf-8') as f:
        raw = json.load(f)

    if not isinstance(raw, dict):
        raise ValueError(f"Mirror configuration {path} must be a JSON object")

    sync_section = raw.get('sync') or {}
    mirror_section = raw.get('mirror') or {}

    schedule = sync_section.get('schedule', [])
    if SYNC_SCHEDULE:
        schedule = split_schedule(SYNC_SCHEDULE)
    if isinstance(schedule, str):
        schedule = [schedule]
    if not isinstance(schedule, list):
        raise ValueError("sync.schedule must be a list of cron expressions")

    base_path = MIRROR_BASE_PATH or mirror_section.get('base_path')
    if not base_path:
        raise ValueError("mirror.base_path is not set (use MIRROR_BASE_PATH or the config file)")

    config_dir = os.path.dirname(os.path.abspath(path))
    return {
        'schedule': schedule,
        'base_path': get_absolute_path(base_path, config_dir),
        'data': _validate_mirror_data(mirror_section.get('data', {})),
    }
