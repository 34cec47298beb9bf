from __future__ import annotations

import os
import tempfile
from pathlib import Path

# Point settings at a throwaway SQLite file before any willguard module reads them.
_TEST_DB_DIR = Path(tempfile.mkdtemp(prefix="willguard-tests-"))
os.environ["DATABASE_URL"] = os.environ.get(
    "WILLGUARD_TEST_DATABASE_URL",
    f"sqlite+aiosqlite:///{_TEST_DB_DIR / 'willguard.db'}",
)
os.environ["REDIS_URL"] = ""
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"
os.environ["PAYLOAD_STORE_URL"] = "noop://payloads"
os.environ["NOTIFY_EMAIL_API_URL"] = "noop://email"
os.environ["NOTIFY_PUSH_WEBHOOK_URL"] = "noop://push"
