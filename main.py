import os
import sys
from pathlib import Path

import uvicorn

# Add project root to path
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from planner.logger import setup_logging


def main():
    """Main entry point for the Life Planner web service."""
    setup_logging()

    reload_enabled = os.getenv("LIFE_PLANNER_RELOAD", "0").lower() in {"1", "true", "yes"}
    host = os.getenv("LIFE_PLANNER_HOST", "0.0.0.0")
    port = int(os.getenv("LIFE_PLANNER_PORT", "8010"))

    uvicorn.run(
        "web.backend.app:app",
        host=host,
        port=port,
        reload=reload_enabled,
        reload_dirs=["web", "planner"] if reload_enabled else None,
    )


if __name__ == "__main__":
    main()
