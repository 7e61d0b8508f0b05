"""
Tests del acceso a datos: lecturas por rango y escrituras compare-and-set.
"""

from datetime import timedelta

import pytest

import storage
from exceptions import NotFoundError, StateConflictError, ValidationError
from models import Achievement, Quest, QuestStatus


class TestUsers:
    def test_get_missing_user(self, db):
        with pytest.raises(NotFoundError):
            storage.get_user(db, 999)

    def test_login_lookup_by_username_or_email(self, db, make_user):
        user = make_user(username="Artemis", email="artemis@example.com")

        assert storage.get_user_by_login(db, "artemis").id == user.id
        assert storage.get_user_by_login(db, "ARTEMIS@example.com").id == user.id
        assert storage.get_user_by_login(db, "apollo") is None

    def test_update_user_is_partial(self, db, user):
        storage.update_user(db, user.id, {"xp": 500})
        db.commit()

        reloaded = storage.get_user(db, user.id)
        assert reloaded.xp == 500
        assert reloaded.xpass == 100

    def test_mark_task_generation_compare_and_set(self, db, user, now):
        storage.mark_task_generation(db, user.id, None, now)
        db.commit()

        with pytest.raises(StateConflictError):
            storage.mark_task_generation(db, user.id, None, now + timedelta(minutes=1))


class TestQuestWrites:
    def test_new_quest_is_active_with_options(self, db, make_quest):
        quest = make_quest(difficulty="easy")

        assert quest.status == QuestStatus.active.value
        assert [o.type for o in storage.get_punishment_options(db, quest.id)] == ["xp", "xpass", "physical"]

    def test_status_write_requires_expected_status(self, db, make_quest):
        quest = make_quest()
        with pytest.raises(ValidationError):
            storage.update_quest(db, quest.id, {"status": QuestStatus.completed})

    def test_compare_and_set_success(self, db, make_quest):
        quest = make_quest()

        updated = storage.update_quest(
            db, quest.id, {"status": QuestStatus.failed}, expected_status=QuestStatus.active
        )
        db.commit()

        assert updated.status == "failed"

    def test_compare_and_set_conflict(self, db, make_quest):
        quest = make_quest()
        storage.update_quest(db, quest.id, {"status": QuestStatus.completed}, expected_status=QuestStatus.active)
        db.commit()

        with pytest.raises(StateConflictError) as exc:
            storage.update_quest(db, quest.id, {"status": QuestStatus.failed}, expected_status=QuestStatus.active)
        assert exc.value.current_status == "completed"
        assert exc.value.expected_status == "active"

    def test_extra_condition_must_hold(self, db, make_quest, now):
        quest = make_quest()

        with pytest.raises(StateConflictError):
            storage.update_quest(
                db, quest.id, {"status": QuestStatus.failed},
                expected_status=QuestStatus.active,
                conditions=[Quest.expires_at < now],
            )

    def test_update_missing_quest(self, db):
        with pytest.raises(NotFoundError):
            storage.update_quest(db, 404, {"status": QuestStatus.failed}, expected_status=QuestStatus.active)

    def test_update_bumps_updated_at(self, db, make_quest):
        quest = make_quest()
        before = quest.updated_at

        updated = storage.update_quest(db, quest.id, {"proof": "photo.jpg"})
        assert updated.updated_at > before


class TestQuestReads:
    def test_list_by_status(self, db, user, make_quest):
        first = make_quest()
        make_quest()
        storage.update_quest(db, first.id, {"status": QuestStatus.failed}, expected_status=QuestStatus.active)
        db.commit()

        assert [q.id for q in storage.list_quests(db, user.id, status=QuestStatus.failed)] == [first.id]
        assert len(storage.list_quests(db, user.id)) == 2
        assert storage.count_quests(db, user.id, "active") == 1

    def test_list_since_cursor(self, db, user, make_quest):
        old = make_quest()
        recent = make_quest()
        touched = storage.update_quest(db, recent.id, {"proof": "draft"})
        db.commit()

        changed = storage.list_quests(db, user.id, since=old.updated_at)
        assert [q.id for q in changed] == [touched.id]

    def test_expired_query(self, db, make_quest, now):
        soon = make_quest(expires_in=timedelta(hours=1))
        make_quest(expires_in=timedelta(hours=48))

        expired = storage.get_expired_quests(db, now + timedelta(hours=2))
        assert [q.id for q in expired] == [soon.id]

    def test_quests_are_per_user(self, db, make_user, make_quest):
        other = make_user()
        make_quest()

        assert storage.list_quests(db, other.id) == []


class TestAchievements:
    def test_listing_is_per_user_in_unlock_order(self, db, user, make_user, now):
        other = make_user()
        db.add_all([
            Achievement(user_id=user.id, title="Second", description="b", unlocked_at=now),
            Achievement(user_id=user.id, title="First", description="a", unlocked_at=now - timedelta(days=1)),
            Achievement(user_id=other.id, title="Not mine", description="c", unlocked_at=now),
        ])
        db.commit()

        assert [a.title for a in storage.list_achievements(db, user.id)] == ["First", "Second"]
