import pytest

from virtual_lab.server.sessions import SessionStore


@pytest.fixture(autouse=True)
def _no_real_gemini_key(monkeypatch):
    """Keep tests off the real provider even when the developer has a key set.

    Tests that want a provider build one explicitly with an httpx MockTransport.
    """
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path / "lab.db")
