"""
Centralized filesystem paths for runtime data.
"""
import os
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent


def get_data_dir() -> Path:
    """
    Return runtime data directory.

    Priority:
    1. LIFE_PLANNER_DATA_DIR env var
    2. <project_root>/data
    """
    raw = os.getenv("LIFE_PLANNER_DATA_DIR", "").strip()
    if raw:
        return Path(raw).expanduser()
    return PROJECT_ROOT / "data"


def get_logs_dir() -> Path:
    raw = os.getenv("LIFE_PLANNER_LOG_DIR", "").strip()
    if raw:
        return Path(raw).expanduser()
    return PROJECT_ROOT / "logs"


DATA_DIR = get_data_dir()
PLAN_STORE_PATH = DATA_DIR / "daily_plans.json"
