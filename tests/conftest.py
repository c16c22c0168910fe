# tests/conftest.py
"""Pytest configuration and shared fixtures."""

import os
from datetime import timedelta

import pytest

# Keep the background optimizer off for tests unless a test starts it itself
os.environ["ACE_OPTIMIZER_ENABLED"] = "false"

from ace_playbook.core.config import load_config  # noqa: E402
from ace_playbook.core.manager import PlaybookManager  # noqa: E402
from ace_playbook.core.schema import Bullet, BulletMetadata, Category  # noqa: E402
from ace_playbook.utils import utc_now  # noqa: E402

ENV_KEYS = (
    "ACE_BASE_DIR",
    "ACE_MAX_BULLETS",
    "ACE_KEEP_RATIO",
    "ACE_HOT_CACHE_SIZE",
    "ACE_HALF_LIFE_DAYS",
    "ACE_DEFAULT_LIMIT",
    "ACE_DEDUP_THRESHOLD",
    "ACE_STALE_DAYS",
    "ACE_MAX_FAILURE_RATE",
    "ACE_PROTECT_RECENT_DAYS",
    "ACE_PROTECT_SUCCESS_RATE",
    "ACE_PROTECT_IMPORTANCE",
    "ACE_LSH_MIN_BUCKET",
    "ACE_MINHASH_NUM_PERM",
    "ACE_LSH_THRESHOLD",
    "ACE_OPTIMIZER_INTERVAL_SECS",
    "ACE_OPTIMIZER_TRIGGER_CALLS",
    "ACE_LOG_LEVEL",
    "ACE_LOG_FORMAT",
    "MCP_TRANSPORT",
    "MCP_PORT",
)


@pytest.fixture
def clean_env(monkeypatch):
    """Strip config overrides that may be set in the developer's shell."""
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("ACE_OPTIMIZER_ENABLED", "false")


@pytest.fixture
def config(tmp_path, clean_env):
    """Built-in defaults with storage pointed at a temp directory."""
    cfg = load_config(tmp_path / "missing.toml")
    cfg.storage.base_dir = str(tmp_path / "store")
    return cfg


@pytest.fixture
def manager(config):
    mgr = PlaybookManager(config=config)
    yield mgr
    mgr.close()


def _make_bullet(
    content: str,
    category: Category = Category.STRATEGIES_AND_RULES,
    age_days: float = 0.0,
    **meta,
) -> Bullet:
    """Build a bullet directly, bypassing the merge engine's length checks."""
    stamp = utc_now() - timedelta(days=age_days)
    return Bullet(
        category=category,
        content=content,
        created_at=stamp,
        updated_at=stamp,
        metadata=BulletMetadata(**meta),
    )


@pytest.fixture
def make_bullet():
    return _make_bullet
