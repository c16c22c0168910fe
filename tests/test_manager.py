"""Tests for the PlaybookManager facade: queries, clear, flush, recovery."""

import threading
from unittest.mock import patch

import pytest

from ace_playbook.core.errors import PlaybookError, StoreUnavailable
from ace_playbook.core.manager import PlaybookManager
from ace_playbook.core.schema import Category, DeltaRequest, NewBullet, Playbook
from ace_playbook.core.storage.bullet_store import BulletStorage

STRATEGY = "Always run `cargo test` before pushing"
TOOL_TIP = "Use docker compose logs -f to follow the output of every service at once"


def add(manager, *contents, session_id="s1"):
    return manager.merge(
        DeltaRequest(session_id=session_id, new_bullets=[NewBullet(content=c) for c in contents])
    )


class TestQuery:
    def test_query_returns_match_and_counts_reference(self, manager):
        bullet_id = add(manager, STRATEGY).added_ids[0]

        results = manager.query_bullets("run tests", limit=5)

        assert [b.id for b in results] == [bullet_id]
        assert results[0].metadata.reference_count == 1
        assert manager.get_bullet(bullet_id).metadata.reference_count == 1

    def test_query_without_match(self, manager):
        add(manager, STRATEGY)
        assert manager.query_bullets("kubernetes helm chart") == []

    def test_query_returns_copies(self, manager):
        bullet_id = add(manager, STRATEGY).added_ids[0]
        result = manager.query_bullets("cargo")[0]
        result.metadata.reference_count = 100
        assert manager.get_bullet(bullet_id).metadata.reference_count == 1

    def test_query_does_not_bump_version(self, manager):
        add(manager, STRATEGY)
        manager.query_bullets("cargo")
        assert manager.version == 1

    def test_reference_counts_persist_on_close(self, config):
        manager = PlaybookManager(config=config)
        bullet_id = add(manager, STRATEGY).added_ids[0]
        manager.query_bullets("cargo")
        manager.query_bullets("cargo test")
        manager.close()

        with PlaybookManager(config=config) as reloaded:
            assert reloaded.get_bullet(bullet_id).metadata.reference_count == 2
            assert reloaded.version == 1

    def test_default_limit_from_config(self, config):
        config.index.default_limit = 1
        with PlaybookManager(config=config) as manager:
            add(manager, STRATEGY, "Always run cargo clippy before pushing code")
            assert len(manager.query_bullets("cargo")) == 1


class TestClear:
    def test_clear_archives_and_bumps_version(self, manager):
        add(manager, STRATEGY, TOOL_TIP)

        manager.clear()

        assert manager.get_stats().total == 0
        assert manager.version == 2
        assert manager.query_bullets("cargo") == []
        snapshots = manager.storage.list_archives("playbook")
        assert len(snapshots) == 1
        archived = Playbook.model_validate_json(snapshots[0].read_text())
        assert archived.total == 2

    def test_clear_without_archive(self, manager):
        add(manager, STRATEGY)
        manager.clear(archive=False)
        assert manager.storage.list_archives() == []
        assert manager.get_stats().total == 0

    def test_version_keeps_increasing_after_clear(self, manager):
        add(manager, STRATEGY)
        manager.clear()
        assert add(manager, TOOL_TIP).version == 3


class TestLifecycle:
    def test_round_trip_through_storage(self, config):
        with PlaybookManager(config=config) as manager:
            add(manager, STRATEGY, TOOL_TIP, session_id="s1")
            add(
                manager,
                "Never commit credentials or API tokens to the repository",
                session_id="s2",
            )
            before = manager.snapshot()

        with PlaybookManager(config=config) as reloaded:
            after = reloaded.snapshot()
            assert after.version == before.version
            assert after.bullets == before.bullets
            assert after.stats == before.stats
            assert after.stats.total_sessions == 2

    def test_corrupt_file_recovered_as_empty(self, config, tmp_path):
        store = tmp_path / "store"
        store.mkdir()
        (store / "playbook.json").write_text('{"version": "many"')

        with PlaybookManager(config=config) as manager:
            assert manager.get_stats().total == 0
            assert len(manager.storage.list_archives("corrupt")) == 1
            assert add(manager, STRATEGY).changed

    def test_closed_manager_rejects_writes(self, config):
        manager = PlaybookManager(config=config)
        manager.close()
        with pytest.raises(PlaybookError):
            add(manager, STRATEGY)
        with pytest.raises(PlaybookError):
            manager.query_bullets("cargo")

    def test_flush_without_changes(self, manager):
        assert manager.flush() is False

    def test_explicit_base_dir(self, config, tmp_path):
        other = tmp_path / "elsewhere"
        with PlaybookManager(base_dir=other, config=config) as manager:
            add(manager, STRATEGY)
        assert (other / "playbook.json").exists()

    def test_optimizer_stats(self, manager):
        add(manager, STRATEGY, TOOL_TIP)
        manager.query_bullets("cargo")
        stats = manager.optimizer_stats()

        assert stats.total_bullets == 2
        assert stats.avg_references == 0.5
        assert stats.age_buckets["<1d"] == 2
        assert stats.reference_buckets == {"0": 1, "1-5": 1, "6-20": 0, ">20": 0}
        assert stats.avg_weight > 0
        assert stats.calls_since_pass == 2


def test_concurrent_queries_and_merges_keep_invariants(manager):
    add(manager, STRATEGY, TOOL_TIP)
    errors = []

    def reader():
        try:
            for _ in range(50):
                manager.query_bullets("cargo docker")
        except Exception as e:  # pragma: no cover
            errors.append(e)

    def writer(n):
        try:
            for i in range(5):
                add(manager, f"Always tag release {n}-{i} builds with the exact commit hash")
        except Exception as e:  # pragma: no cover
            errors.append(e)

    threads = [threading.Thread(target=reader) for _ in range(3)]
    threads += [threading.Thread(target=writer, args=(n,)) for n in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    snapshot = manager.snapshot()
    assert snapshot.version == 11
    assert snapshot.stats.total == 12
    assert sum(snapshot.stats.by_category.values()) == snapshot.stats.total
    for category in Category:
        assert all(b.category == category for b in snapshot.bullets[category])
    assert len({b.id for b in snapshot.iter_bullets()}) == snapshot.total


class TestWriteFailures:
    PARAPHRASE_A = "Use cargo test to run tests"
    PARAPHRASE_B = "Run tests using cargo test"

    def _seed_duplicates(self, config, make_bullet, version=3):
        a = make_bullet(self.PARAPHRASE_A, Category.TOOL_USAGE, reference_count=3)
        b = make_bullet(self.PARAPHRASE_B, Category.TOOL_USAGE)
        playbook = Playbook(version=version, bullets={Category.TOOL_USAGE: [a, b]})
        BulletStorage(config.storage.base_dir).save(playbook)
        return a, b

    def test_failed_optimize_restores_store(self, config, make_bullet):
        _, b = self._seed_duplicates(config, make_bullet)

        with PlaybookManager(config=config) as manager:
            with patch.object(manager.storage, "save", side_effect=StoreUnavailable("disk full")):
                with pytest.raises(StoreUnavailable):
                    manager.optimize()

            assert manager.version == 3
            assert manager.get_stats().total == 2
            assert len(manager.index) == 2
            assert manager.get_bullet(b.id) is not None
            assert len(manager.query_bullets("cargo")) == 2
            assert manager.storage.list_archives("removed") == []
            assert BulletStorage(config.storage.base_dir).load().version == 3

            result = manager.optimize()
            assert result.merged == 1
            assert result.version == 4
            assert len(manager.storage.list_archives("removed")) == 1

    def test_failed_flush_keeps_version(self, config, make_bullet):
        _, b = self._seed_duplicates(config, make_bullet)

        with PlaybookManager(config=config) as manager:
            # Stop as soon as the duplicate slice has been applied
            result = manager._optimize_pass(lambda: manager.get_stats().total < 2)
            assert result.interrupted
            assert manager.version == 3
            assert manager.get_stats().total == 1

            with patch.object(manager.storage, "save", side_effect=StoreUnavailable("disk full")):
                for _ in range(2):
                    with pytest.raises(StoreUnavailable):
                        manager.flush()
            assert manager.version == 3
            assert manager.storage.list_archives("removed") == []
            assert BulletStorage(config.storage.base_dir).load().version == 3

            assert manager.flush() is True
            assert manager.version == 4
            assert len(manager.storage.list_archives("removed")) == 1
        reloaded = BulletStorage(config.storage.base_dir).load()
        assert reloaded.version == 4
        assert reloaded.get(b.id) is None
