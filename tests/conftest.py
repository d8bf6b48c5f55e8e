import pytest

from enhance_batch import config
from enhance_batch.db import init_db


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    db_path = tmp_path / "batches.db"
    blob_root = tmp_path / "blobs"
    blob_root.mkdir(parents=True, exist_ok=True)

    monkeypatch.setattr(config.settings, "database_path", str(db_path))
    monkeypatch.setattr(config.settings, "blob_root", str(blob_root))
    monkeypatch.setattr(config.settings, "blob_signing_key", "test-signing-key")
    monkeypatch.setattr(config.settings, "public_base_url", "http://testserver")
    monkeypatch.setattr(config.settings, "admin_api_token", "test-admin-token")
    monkeypatch.setattr(config.settings, "worker_secret", "test-worker-secret")
    monkeypatch.setattr(config.settings, "email_webhook_url", "")
    monkeypatch.setattr(config.settings, "poll_interval_sec", 0)
    monkeypatch.setattr(config.settings, "poll_max_attempts", 5)
    monkeypatch.setattr(config.settings, "max_files", 20)

    init_db()
    yield
