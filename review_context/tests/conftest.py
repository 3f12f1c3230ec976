# Pytest configuration for the review_context test suite
#
# Timeout strategy:
# - FAST tests: 10s (pure unit tests, no I/O)
# - MEDIUM tests: 30s (file I/O, cache threads)
# - SLOW tests: 60s (real git subprocesses)

from __future__ import annotations

import pytest
from loguru import logger

from mocks.fake_vcs import FakeVcs

# ---------------------------------------------------------------------------
# Timeout configuration by test file
# ---------------------------------------------------------------------------
# Maps test file patterns to timeout values (seconds)
# More specific patterns should come first

TIMEOUT_MAP = {
    # SLOW tests (60s) - real git repositories
    "test_git_provider": 60,
    "test_cli": 60,

    # MEDIUM tests (30s) - snapshot files, maintenance thread
    "test_cache_store": 30,
    "test_config_loader": 15,
    "test_pipeline": 15,

    # FAST tests (10s) - pure unit tests
    "test_diff_parser": 10,
    "test_strategy_selector": 10,
    "test_change_analyzer": 10,
    "test_context_extractor": 10,
}


def pytest_collection_modifyitems(config, items):
    """Apply timeout markers based on test file names."""
    for item in items:
        test_name = item.path.stem

        timeout = 30  # default
        for pattern, t in TIMEOUT_MAP.items():
            if pattern in test_name:
                timeout = t
                break

        if item.get_closest_marker("timeout") is None:
            item.add_marker(pytest.mark.timeout(timeout))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_vcs() -> FakeVcs:
    return FakeVcs()


@pytest.fixture
def log_messages():
    """Capture loguru messages (level, text) emitted during a test."""
    messages = []
    handler_id = logger.add(lambda m: messages.append((m.record["level"].name, m.record["message"])), level="DEBUG")
    yield messages
    logger.remove(handler_id)
