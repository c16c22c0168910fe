"""Tests for the delta merge engine."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from ace_playbook.core.errors import StoreUnavailable
from ace_playbook.core.merge import apply_delta, apply_update
from ace_playbook.core.schema import (
    Applicability,
    Bullet,
    BulletUpdate,
    Category,
    DeltaRequest,
    NewBullet,
    Playbook,
    SourceType,
)
from ace_playbook.utils import utc_now

STRATEGY = "Always run `cargo test` before pushing"
SHORT_SNIPPET = "```\n" + "a" * 42 + "\n```"
TOOL_TIP = "Use docker compose logs -f to follow the output of every service at once"
API_TIP = (
    "The GitHub REST endpoint returns paginated results; "
    "follow the Link header to fetch the next page of items"
)


class TestApplyDelta:
    def test_adds_classified_bullet(self):
        delta = DeltaRequest(session_id="s1", new_bullets=[NewBullet(content=STRATEGY)])
        outcome = apply_delta(Playbook(), delta)

        assert outcome.changed
        assert len(outcome.added) == 1
        bullet = outcome.added[0]
        assert bullet.category == Category.STRATEGIES_AND_RULES
        assert bullet.source_session == "s1"
        assert outcome.playbook.stats.total == 1
        assert outcome.playbook.stats.by_category[Category.STRATEGIES_AND_RULES] == 1

    def test_input_playbook_untouched(self):
        playbook = Playbook()
        apply_delta(playbook, DeltaRequest(new_bullets=[NewBullet(content=STRATEGY)]))
        assert playbook.total == 0
        assert playbook.stats.total == 0

    def test_out_of_bounds_rejected(self):
        delta = DeltaRequest(
            new_bullets=[NewBullet(content=SHORT_SNIPPET, category=Category.CODE_SNIPPETS)]
        )
        outcome = apply_delta(Playbook(), delta)

        assert not outcome.changed
        assert outcome.playbook.total == 0
        rejected = outcome.rejected[0]
        assert rejected.index == 0
        assert rejected.reason == "out_of_bounds"
        assert rejected.category == Category.CODE_SNIPPETS
        assert rejected.length == 50
        assert rejected.band == (100, 3000)

    def test_partial_success(self):
        delta = DeltaRequest(
            new_bullets=[
                NewBullet(content=STRATEGY),
                NewBullet(content="Execution failed"),
                NewBullet(content=TOOL_TIP),
                NewBullet(content=SHORT_SNIPPET, category=Category.CODE_SNIPPETS),
                NewBullet(content=API_TIP),
            ]
        )
        outcome = apply_delta(Playbook(), delta)

        assert len(outcome.added) == 3
        assert [r.index for r in outcome.rejected] == [1, 3]
        assert [r.reason for r in outcome.rejected] == ["low_quality", "out_of_bounds"]
        assert outcome.playbook.stats.total == 3

    def test_content_is_stripped(self):
        delta = DeltaRequest(new_bullets=[NewBullet(content=f"  {STRATEGY}\n")])
        assert apply_delta(Playbook(), delta).added[0].content == STRATEGY

    def test_candidate_session_wins(self):
        delta = DeltaRequest(
            session_id="batch",
            new_bullets=[NewBullet(content=STRATEGY, source_session="origin")],
        )
        assert apply_delta(Playbook(), delta).added[0].source_session == "origin"

    def test_update_applies_deltas(self, make_bullet):
        bullet = make_bullet(STRATEGY, age_days=2, success_count=1)
        bullet.tags = ["rust"]
        playbook = Playbook(bullets={bullet.category: [bullet]})
        now = utc_now()
        delta = DeltaRequest(
            updates=[
                BulletUpdate(
                    id=bullet.id,
                    success_delta=2,
                    failure_delta=1,
                    reference_delta=3,
                    importance=0.9,
                    tags=["ci"],
                    related_tools=["cargo"],
                )
            ]
        )
        outcome = apply_delta(playbook, delta, now)

        updated = outcome.updated[bullet.id]
        assert updated.content == bullet.content
        assert updated.category == bullet.category
        assert updated.metadata.success_count == 3
        assert updated.metadata.failure_count == 1
        assert updated.metadata.reference_count == 3
        assert updated.metadata.importance == 0.9
        assert updated.tags == ["ci", "rust"]
        assert updated.metadata.related_tools == ["cargo"]
        assert updated.updated_at == now
        assert updated.created_at == bullet.created_at
        # original object is not mutated
        assert bullet.metadata.success_count == 1
        assert outcome.playbook.stats.tool_usage == {"cargo": 1}

    def test_stale_update_reported(self):
        delta = DeltaRequest(updates=[BulletUpdate(id="gone", success_delta=1)])
        outcome = apply_delta(Playbook(), delta)
        assert outcome.stale_updates == ["gone"]
        assert not outcome.changed

    def test_touched_covers_added_and_updated(self):
        playbook = Playbook()
        first = apply_delta(playbook, DeltaRequest(new_bullets=[NewBullet(content=STRATEGY)]))
        bullet_id = first.added[0].id
        second = apply_delta(
            first.playbook,
            DeltaRequest(
                new_bullets=[NewBullet(content=TOOL_TIP)],
                updates=[BulletUpdate(id=bullet_id, reference_delta=1)],
            ),
        )
        assert list(second.updated) == [bullet_id]
        assert len(second.touched) == 2


def test_apply_update_replaces_fields():
    bullet = Bullet(category=Category.GENERAL, content="x")
    now = utc_now() + timedelta(seconds=1)
    update = BulletUpdate(
        id=bullet.id,
        source_type=SourceType.MANUAL_ENTRY,
        confidence=0.4,
        applicability=Applicability(languages=["go"]),
    )
    updated = apply_update(bullet, update, now)
    assert updated.metadata.source_type == SourceType.MANUAL_ENTRY
    assert updated.metadata.confidence == 0.4
    assert updated.metadata.applicability.languages == ["go"]
    assert updated.updated_at == now


class TestManagerMerge:
    def test_scenario_single_strategy(self, manager):
        summary = manager.merge(
            DeltaRequest(session_id="s1", new_bullets=[NewBullet(content=STRATEGY)])
        )

        assert summary.changed
        assert summary.accepted == 1
        assert summary.rejected == []
        assert summary.version == 1
        stats = manager.get_stats()
        assert stats.total == 1
        assert stats.by_category[Category.STRATEGIES_AND_RULES] == 1
        assert manager.storage.playbook_path.exists()

    def test_scenario_short_code_hint(self, manager):
        summary = manager.merge(
            DeltaRequest(
                new_bullets=[NewBullet(content=SHORT_SNIPPET, category=Category.CODE_SNIPPETS)]
            )
        )

        assert not summary.changed
        assert summary.rejected[0].reason == "out_of_bounds"
        assert summary.rejected[0].band == (100, 3000)
        assert manager.get_stats().total == 0
        assert manager.version == 0

    def test_empty_delta_is_noop(self, manager):
        manager.merge(DeltaRequest(new_bullets=[NewBullet(content=STRATEGY)]))
        before = manager.storage.playbook_path.read_bytes()

        summary = manager.merge(DeltaRequest(session_id="idle"))

        assert not summary.changed
        assert summary.version == 1
        assert manager.version == 1
        assert manager.storage.playbook_path.read_bytes() == before

    def test_all_rejected_does_not_bump_version(self, manager):
        summary = manager.merge(DeltaRequest(new_bullets=[NewBullet(content="ok")]))
        assert summary.version == 0
        assert not manager.storage.playbook_path.exists()

    def test_versions_strictly_increase(self, manager):
        versions = []
        for content in (STRATEGY, TOOL_TIP, API_TIP):
            summary = manager.merge(DeltaRequest(new_bullets=[NewBullet(content=content)]))
            versions.append(summary.version)
        assert versions == [1, 2, 3]

    def test_update_is_persisted(self, manager, config):
        from ace_playbook.core.manager import PlaybookManager

        added = manager.merge(DeltaRequest(new_bullets=[NewBullet(content=STRATEGY)]))
        bullet_id = added.added_ids[0]
        summary = manager.merge(
            DeltaRequest(updates=[BulletUpdate(id=bullet_id, success_delta=1, tags=["ci"])])
        )
        assert summary.updated_ids == [bullet_id]
        manager.close()

        reloaded = PlaybookManager(config=config)
        bullet = reloaded.get_bullet(bullet_id)
        assert bullet.metadata.success_count == 1
        assert bullet.tags == ["ci"]
        reloaded.close()

    def test_stale_update_keeps_state(self, manager):
        summary = manager.merge(DeltaRequest(updates=[BulletUpdate(id="missing")]))
        assert summary.stale_updates == ["missing"]
        assert not summary.changed
        assert manager.version == 0

    def test_persist_failure_leaves_state_unchanged(self, manager):
        manager.merge(DeltaRequest(new_bullets=[NewBullet(content=STRATEGY)]))
        before = manager.storage.playbook_path.read_bytes()

        with patch(
            "ace_playbook.core.storage.bullet_store.atomic_write_text",
            side_effect=OSError("disk full"),
        ):
            with pytest.raises(StoreUnavailable):
                manager.merge(DeltaRequest(new_bullets=[NewBullet(content=TOOL_TIP)]))

        assert manager.version == 1
        assert manager.get_stats().total == 1
        assert manager.query_bullets("docker compose") == []
        assert manager.storage.playbook_path.read_bytes() == before

    def test_compaction_over_ceiling(self, manager):
        manager.max_bullets = 3
        manager.keep_ratio = 0.7
        contents = [
            STRATEGY,
            TOOL_TIP,
            API_TIP,
            "Never commit credentials or API tokens to the repository history",
        ]
        summary = manager.merge(
            DeltaRequest(new_bullets=[NewBullet(content=c) for c in contents])
        )

        assert summary.compacted == 2
        assert len(summary.added_ids) == 2
        assert manager.get_stats().total == 2
        archived = manager.storage.list_archives("removed")
        assert len(archived) == 1
        record = manager.storage.read_archive(archived[0])
        assert record.reason == "compaction"
        assert {e.reason for e in record.entries} == {"compacted"}
        assert {b.id for b in manager.snapshot().iter_bullets()} == set(summary.added_ids)

    def test_failed_compaction_write_leaves_no_archive(self, manager):
        manager.max_bullets = 3
        contents = [
            STRATEGY,
            TOOL_TIP,
            API_TIP,
            "Never commit credentials or API tokens to the repository history",
        ]
        with patch.object(manager.storage, "save", side_effect=StoreUnavailable("disk full")):
            with pytest.raises(StoreUnavailable):
                manager.merge(DeltaRequest(new_bullets=[NewBullet(content=c) for c in contents]))

        assert manager.version == 0
        assert manager.get_stats().total == 0
        assert manager.storage.list_archives("removed") == []
