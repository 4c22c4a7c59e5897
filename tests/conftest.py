import os
import sys
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Keep tests away from the real data/ and logs/ directories.
os.environ.setdefault("LIFE_PLANNER_DATA_DIR", str(PROJECT_ROOT / ".pytest_data"))
os.environ.setdefault("LIFE_PLANNER_LOG_DIR", str(PROJECT_ROOT / ".pytest_logs"))
