import os
import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
PROJECT_ROOT = BACKEND_ROOT.parent
for candidate in (BACKEND_ROOT, PROJECT_ROOT):
    if str(candidate) not in sys.path:
        sys.path.insert(0, str(candidate))

os.environ.setdefault("CORS_ORIGINS", "http://localhost:5173")
os.environ.setdefault("MONITOR_SCHEDULER_ENABLED", "0")
os.environ.setdefault("MONITOR_GATEWAY_URL", "")
