"""Root conftest: point the default engine at in-memory SQLite for tests."""

import os

os.environ.setdefault("ESTATE_DB_URL", "sqlite:///:memory:")
