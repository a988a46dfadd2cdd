import os
import sys

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

# ⚙️ Testumgebung: SQLite statt MySQL, schneller KDF, fester Schlüssel
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_TABLES", "0")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key")
os.environ.setdefault("ENCRYPTION_ITERATIONS", "1000")
os.environ.setdefault("DEFAULT_TIMEZONE", "UTC")

from main import app  # noqa: E402
from utils.scan_context import DeviceInfo, LocationInfo, ScanContext  # noqa: E402


@pytest_asyncio.fixture
async def client():
    """Async-Testclient über den ASGI-Transport."""
    transport = ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_context():
    def _make(
        device_type="desktop",
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64)",
        country="Germany",
        language="de-DE",
        when=None,
        referrer=None,
        timezone_name="UTC",
    ):
        from datetime import datetime, timezone

        return ScanContext(
            device=DeviceInfo(type=device_type, os="Windows", browser="Chrome", user_agent=user_agent),
            location=LocationInfo(
                country=country,
                region="Unknown",
                city="Unknown",
                timezone=timezone_name,
                language=language,
            ),
            time=when or datetime(2026, 10, 20, 12, 0, tzinfo=timezone.utc),
            referrer=referrer,
        )

    return _make
