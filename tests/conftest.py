import os
import sys

import pytest

# Project root for the pipeline modules, tests dir for the shared fakes
TESTS_DIR = os.path.abspath(os.path.dirname(__file__))
ROOT = os.path.abspath(os.path.join(TESTS_DIR, os.pardir))
for path in (ROOT, TESTS_DIR):
    if path not in sys.path:
        sys.path.insert(0, path)


def pytest_configure(config):
    for marker in ("unit", "integration", "http", "checkpoint", "e2e"):
        config.addinivalue_line("markers", f"{marker}: {marker} tests")


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, tmp_path):
    # Never pick up a developer's real credentials or settings
    for key in (
        "DATAFORSEO_BASIC",
        "DATAFORSEO_LOGIN",
        "DATAFORSEO_PASSWORD",
        "DATAFORSEO_BASE_URL",
        "SERP_DEVICE",
        "SERP_OS",
        "SERP_LANGUAGE_CODE",
        "RANK_MATCH_MODE",
        "SITE_DOMAIN",
        "POLL_MAX_ATTEMPTS",
        "CHECKPOINT_EVERY",
        "HTTP_TIMEOUT",
        "HTTP_MAX_RETRIES",
        "RANK_PIPELINE_ENV_FILE",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(key, raising=False)

    monkeypatch.setenv("DATAFORSEO_AUTHORIZATION", "Basic dGVzdDp0ZXN0")
    monkeypatch.setenv("RANK_MATCH_TARGET", "aaacwildliferemoval.com")
    monkeypatch.setenv("RANK_DATA_DIR", str(tmp_path / "data"))
    # No real waiting between polls or before landing
    monkeypatch.setenv("POLL_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("LANDING_DELAY_SECONDS", "0")


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "data"
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture
def config(data_dir):
    from rank_pipeline import Config

    return Config()


@pytest.fixture
def fake_client():
    from fakes import FakeSerpClient

    return FakeSerpClient()
