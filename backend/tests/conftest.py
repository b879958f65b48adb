from __future__ import annotations

import os
import sys
from pathlib import Path

# Ensure `backend/` is on sys.path so `import solarcrm.*` works in tests.
BACKEND_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_DIR))

# Tests never talk to AWS; repositories are monkeypatched per test.
os.environ.setdefault("NODE_ENV", "test")
os.environ.setdefault("AWS_REGION", "ap-southeast-1")
os.environ.setdefault("BUSINESS_TIMEZONE", "Asia/Manila")
