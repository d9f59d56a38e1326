import time

import platformdirs
import pytest
import requests
from helpers import (
    SAMPLE_ENTRIES,
    FakeCabExpander,
    FakeSession,
    RecordingCapturer,
    ZipExtractor,
    build_catalog,
    build_cva,
    build_package,
    catalog_url,
    softpaq_url,
)

from spmirror.config import EngineConfig
from spmirror.constants import FALLBACK_REFERENCE_URL
from spmirror.engine.downloader import DownloadManager
from spmirror.engine.retry import RetryPolicy

_NETWORK_BLOCK_MSG = (
    "Network access is blocked during tests. Inject a FakeSession instead."
)


def _block_network(*_args, **_kwargs):
    """
    Prevent network calls in tests by raising a RuntimeError.

    Raises:
        RuntimeError: with `_NETWORK_BLOCK_MSG` indicating that network access is blocked during tests.
    """
    raise RuntimeError(_NETWORK_BLOCK_MSG)


def pytest_configure(config):
    """Register the markers used to group the test suite."""
    config.addinivalue_line("markers", "unit: fast tests of a single component")
    config.addinivalue_line(
        "markers", "integration: tests driving several components together"
    )
    config.addinivalue_line("markers", "core_downloads: catalog and package downloads")
    config.addinivalue_line("markers", "repository: repository state and sync")
    config.addinivalue_line("markers", "driverpack: driver pack assembly")
    config.addinivalue_line("markers", "user_interface: command-line interface")


@pytest.fixture(autouse=True)
def _isolate_test_environment(tmp_path_factory, monkeypatch):
    """
    Point every platformdirs lookup and XDG variable at a temporary directory tree.

    Keeps tests from reading a real `spmirror.yaml` or writing into the user's cache.
    """
    base = tmp_path_factory.mktemp("spmirror")
    cache_dir = base / "cache"
    state_dir = base / "state"
    config_dir = base / "config"
    data_dir = base / "data"
    log_dir = state_dir / "log"

    for path in (cache_dir, state_dir, config_dir, data_dir, log_dir):
        path.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("XDG_CACHE_HOME", str(cache_dir))
    monkeypatch.setenv("XDG_STATE_HOME", str(state_dir))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_dir))
    monkeypatch.setenv("XDG_DATA_HOME", str(data_dir))
    monkeypatch.delenv("SPMIRROR_LOG_LEVEL", raising=False)

    monkeypatch.setattr(
        platformdirs, "user_cache_dir", lambda *_args, **_kwargs: str(cache_dir)
    )
    monkeypatch.setattr(
        platformdirs, "user_state_dir", lambda *_args, **_kwargs: str(state_dir)
    )
    monkeypatch.setattr(
        platformdirs, "user_config_dir", lambda *_args, **_kwargs: str(config_dir)
    )
    monkeypatch.setattr(
        platformdirs, "user_data_dir", lambda *_args, **_kwargs: str(data_dir)
    )
    monkeypatch.setattr(
        platformdirs, "user_log_dir", lambda *_args, **_kwargs: str(log_dir)
    )


def pytest_runtest_setup():
    """Replace the requests entry points so an unmocked test fails instead of going online."""
    requests.get = _block_network
    requests.head = _block_network
    requests.post = _block_network
    requests.Session.request = _block_network


@pytest.fixture(autouse=True)
def _mock_time_sleep(monkeypatch):
    """
    Make time.sleep instant for all tests to prevent delays.

    Retry paths normally receive an injected sleep; this catches any that do not.
    """
    monkeypatch.setattr(time, "sleep", lambda *_args, **_kwargs: None)


@pytest.fixture
def engine_config(tmp_path):
    return EngineConfig(
        cache_dir=str(tmp_path / "catalog-cache"),
        lock_retry_delay=30.0,
        current_os="win10:2009",
    )


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def sleeps():
    """Delays requested by the retry policy, in order."""
    return []


@pytest.fixture
def retry_policy(sleeps):
    return RetryPolicy(max_retries=3, delay=30.0, sleep=sleeps.append)


@pytest.fixture
def download_manager(engine_config, fake_session, retry_policy):
    return DownloadManager(engine_config, session=fake_session, retry_policy=retry_policy)


@pytest.fixture
def cab_expander():
    return FakeCabExpander()


@pytest.fixture
def extractor():
    return ZipExtractor()


@pytest.fixture
def capturer():
    return RecordingCapturer()


@pytest.fixture
def published_softpaqs(fake_session):
    """
    Publish the sample catalog for 83b2 / win10:2009 with a binary and CVA per package.

    Returns the catalog entries.
    """
    fake_session.add(catalog_url(), build_catalog(SAMPLE_ENTRIES))
    for entry in SAMPLE_ENTRIES:
        number = entry["id"]
        fake_session.add(
            softpaq_url(number),
            build_package({f"src/drivers/sp{number}.inf": "[Version]"}),
        )
        fake_session.add(
            softpaq_url(number).replace(".exe", ".cva"),
            build_cva(
                number,
                title=entry["name"],
                category=entry["category"],
                inf_paths={"WT64_2009_INFPath": "src\\drivers"},
            ),
        )
    return SAMPLE_ENTRIES


@pytest.fixture
def fallback_catalog_url():
    return catalog_url(host=FALLBACK_REFERENCE_URL)
