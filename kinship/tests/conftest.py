from __future__ import annotations

import os

# Point the engine at an in-memory database before any kinship module builds it.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
