"""Tests for siriustrack.data.db — TrackerDB (SQLite storage)."""

import sqlite3
import time

import pytest

from siriustrack.core.errors import NotFoundError, StorageUnavailableError, ValidationError
from siriustrack.data.db import TrackerDB, deadline
from siriustrack.data.models import AchievementLevel, MilestoneStatus, TodoKind

TODAY = "2026-03-10"


class TestSegments:
    def test_add_segment_returns_segment(self, tracker_db):
        seg = tracker_db.add_segment("Career", overall_goal="Ship v2", color="#ff9500")
        assert seg.id is not None
        assert seg.name == "Career"
        assert seg.overall_goal == "Ship v2"
        assert seg.color == "#ff9500"

    def test_default_color(self, tracker_db):
        assert tracker_db.add_segment("Misc").color == "#6e6e73"

    def test_blank_name_rejected(self, tracker_db):
        with pytest.raises(ValidationError):
            tracker_db.add_segment("  ")
        assert tracker_db.list_segments() == []

    def test_update_segment(self, tracker_db, segment):
        updated = tracker_db.update_segment(segment.id, "Fitness", "Sub-4 marathon", "#000000")
        assert updated.name == "Fitness"
        assert updated.overall_goal == "Sub-4 marathon"

    def test_update_missing_segment_raises(self, tracker_db):
        with pytest.raises(NotFoundError):
            tracker_db.update_segment(999, "X")

    def test_delete_segment_cascades(self, tracker_db, segment):
        todo = tracker_db.add_todo(segment.id, "Run 5k", TODAY)
        tracker_db.toggle_todo(todo.id)
        tracker_db.add_milestone(segment.id, "Half marathon", TODAY)
        tracker_db.add_habit(segment.id, "Stretch")

        assert tracker_db.delete_segment(segment.id) is True
        assert tracker_db.get_todo(todo.id) is None
        assert tracker_db.list_milestones(segment.id) == []
        assert tracker_db.list_habits(segment.id, active_only=False) == []
        assert tracker_db.list_activity_points(segment_id=segment.id) == []

    def test_delete_nonexistent_returns_false(self, tracker_db):
        assert tracker_db.delete_segment(999) is False


class TestTodos:
    def test_add_todo_appends_display_order(self, tracker_db, segment):
        first = tracker_db.add_todo(segment.id, "A", TODAY)
        second = tracker_db.add_todo(segment.id, "B", TODAY)
        weekly = tracker_db.add_todo(segment.id, "C", TODAY, kind="weekly")
        assert first.display_order == 1
        assert second.display_order == 2
        assert weekly.display_order == 1
        assert weekly.kind is TodoKind.WEEKLY

    def test_add_todo_validation(self, tracker_db, segment):
        with pytest.raises(ValidationError):
            tracker_db.add_todo(segment.id, "", TODAY)
        with pytest.raises(ValidationError):
            tracker_db.add_todo(segment.id, "Run", "03/10/2026")
        with pytest.raises(ValidationError):
            tracker_db.add_todo(segment.id, "Run", TODAY, kind="monthly")

    def test_add_todo_unknown_segment(self, tracker_db):
        with pytest.raises(NotFoundError):
            tracker_db.add_todo(42, "Run", TODAY)

    def test_toggle_keeps_completed_and_level_consistent(self, tracker_db, segment):
        todo = tracker_db.add_todo(segment.id, "Run", TODAY)
        done = tracker_db.toggle_todo(todo.id)
        assert done.completed is True
        assert done.achievement_level is AchievementLevel.ACHIEVED
        assert done.completed_at is not None

        undone = tracker_db.toggle_todo(todo.id)
        assert undone.completed is False
        assert undone.achievement_level is AchievementLevel.PENDING
        assert undone.completed_at is None

    def test_set_achievement_keeps_completed_consistent(self, tracker_db, segment):
        todo = tracker_db.add_todo(segment.id, "Run", TODAY)
        achieved = tracker_db.set_todo_achievement(todo.id, AchievementLevel.ACHIEVED)
        assert achieved.completed is True
        pending = tracker_db.set_todo_achievement(todo.id, "pending")
        assert pending.completed is False

    def test_legacy_levels_cannot_be_written(self, tracker_db, segment):
        todo = tracker_db.add_todo(segment.id, "Run", TODAY)
        with pytest.raises(ValidationError):
            tracker_db.set_todo_achievement(todo.id, AchievementLevel.PARTIAL)

    def test_toggle_missing_todo_raises(self, tracker_db):
        with pytest.raises(NotFoundError):
            tracker_db.toggle_todo(999)

    def test_delete_todos_for_date_uncompleted_only(self, tracker_db, segment):
        done = tracker_db.add_todo(segment.id, "Done", TODAY)
        tracker_db.toggle_todo(done.id)
        tracker_db.add_todo(segment.id, "Open", TODAY)

        assert tracker_db.delete_todos_for_date(segment.id, TODAY, uncompleted_only=True) == 1
        remaining = tracker_db.list_todos(segment.id, TODAY)
        assert [t.title for t in remaining] == ["Done"]

    def test_list_todos_in_range(self, tracker_db, segment):
        tracker_db.add_todo(segment.id, "Old", "2026-03-01")
        tracker_db.add_todo(segment.id, "New", "2026-03-09")
        tracker_db.add_todo(segment.id, "Future", "2026-03-20")
        todos = tracker_db.list_todos_in_range(segment.id, "2026-03-01", TODAY)
        assert [t.title for t in todos] == ["New", "Old"]


class TestMilestones:
    def test_add_and_achieve(self, tracker_db, segment):
        ms = tracker_db.add_milestone(segment.id, "10k race", "2026-04-01")
        assert ms.status is MilestoneStatus.PENDING
        done = tracker_db.set_milestone_achievement(ms.id, "achieved")
        assert done.status is MilestoneStatus.COMPLETED
        assert done.achievement_level is AchievementLevel.ACHIEVED
        back = tracker_db.set_milestone_achievement(ms.id, "pending")
        assert back.status is MilestoneStatus.PENDING
        assert back.completed_at is None

    def test_missing_target_date_rejected(self, tracker_db, segment):
        with pytest.raises(ValidationError):
            tracker_db.add_milestone(segment.id, "10k race", "")

    def test_delete_missing_milestone_raises(self, tracker_db):
        with pytest.raises(NotFoundError):
            tracker_db.delete_milestone(999)


class TestHabits:
    def test_generate_habit_todos_once_per_day(self, tracker_db, segment):
        tracker_db.add_habit(segment.id, "Stretch")
        tracker_db.add_habit(segment.id, "Meditate")

        assert tracker_db.generate_habit_todos(segment.id, TODAY) == {"generated": 2, "skipped": 0}
        assert tracker_db.generate_habit_todos(segment.id, TODAY) == {"generated": 0, "skipped": 2}

        todos = tracker_db.list_todos(segment.id, TODAY)
        assert {t.title for t in todos} == {"Stretch", "Meditate"}
        assert all(t.is_from_habit for t in todos)

    def test_inactive_habits_not_generated(self, tracker_db, segment):
        habit = tracker_db.add_habit(segment.id, "Stretch")
        tracker_db.deactivate_habit(habit.id)
        assert tracker_db.generate_habit_todos(segment.id, TODAY)["generated"] == 0
        assert tracker_db.list_habits(segment.id) == []
        assert len(tracker_db.list_habits(segment.id, active_only=False)) == 1

        tracker_db.reactivate_habit(habit.id)
        assert tracker_db.generate_habit_todos(segment.id, TODAY)["generated"] == 1

    def test_list_todos_reflects_habit_completion(self, tracker_db, segment):
        habit = tracker_db.add_habit(segment.id, "Stretch")
        tracker_db.generate_habit_todos(segment.id, TODAY)
        assert tracker_db.toggle_habit_completion(habit.id, segment.id, TODAY) is True

        todos = tracker_db.list_todos(segment.id, TODAY)
        assert todos[0].completed is True
        completions = tracker_db.list_habit_completions(segment.id, TODAY)
        assert completions[0].title == "Stretch"
        assert completions[0].completed is True

    def test_habit_toggle_stamps_generated_todo(self, tracker_db, segment):
        habit = tracker_db.add_habit(segment.id, "Stretch")
        tracker_db.generate_habit_todos(segment.id, TODAY)

        tracker_db.toggle_habit_completion(habit.id, segment.id, TODAY)
        todo = tracker_db.list_todos_in_range(segment.id, TODAY, TODAY)[0]
        assert todo.completed is True
        assert todo.achievement_level is AchievementLevel.ACHIEVED
        assert todo.completed_at is not None

        tracker_db.toggle_habit_completion(habit.id, segment.id, TODAY)
        todo = tracker_db.get_todo(todo.id)
        assert todo.completed is False
        assert todo.completed_at is None

    def test_generated_after_completion_starts_done(self, tracker_db, segment):
        habit = tracker_db.add_habit(segment.id, "Stretch")
        tracker_db.toggle_habit_completion(habit.id, segment.id, TODAY)

        tracker_db.generate_habit_todos(segment.id, TODAY)

        [stored] = tracker_db.list_todos_in_range(segment.id, TODAY, TODAY)
        assert stored.completed is True
        assert stored.achievement_level is AchievementLevel.ACHIEVED
        assert stored.completed_at is not None
        assert tracker_db.list_todos(segment.id, TODAY)[0].completed is True

    def test_toggle_with_foreign_segment_rejected(self, tracker_db, segment):
        career = tracker_db.add_segment("Career")
        habit = tracker_db.add_habit(segment.id, "Stretch")
        with pytest.raises(ValidationError):
            tracker_db.toggle_habit_completion(habit.id, career.id, TODAY)
        assert tracker_db.list_habit_completions(career.id, TODAY) == []

    def test_rename_missing_habit_raises(self, tracker_db):
        with pytest.raises(NotFoundError):
            tracker_db.rename_habit(999, "X")


class TestDiscussionItems:
    def test_add_resolve_and_bulk_delete(self, tracker_db, segment):
        item = tracker_db.add_discussion_item(segment.id, "Why did I skip Tuesday?")
        assert item.resolved is False

        resolved = tracker_db.resolve_discussion_item(item.id)
        assert resolved.resolved is True
        assert resolved.resolved_at is not None

        assert tracker_db.delete_discussions_for_segment(segment.id) == 1
        assert tracker_db.list_discussion_items(segment.id) == []


class TestStorageErrors:
    def test_unopenable_path_raises_storage_unavailable(self, tmp_path):
        # A directory cannot be opened as a database file.
        with pytest.raises(StorageUnavailableError):
            TrackerDB(db_path=str(tmp_path))

    def test_failed_transaction_rolls_back(self, tracker_db, segment):
        with pytest.raises(StorageUnavailableError):
            with tracker_db.transaction() as conn:
                conn.execute(
                    "INSERT INTO todos (segment_id, title, date) VALUES (?, ?, ?)",
                    (segment.id, "Half-written", TODAY),
                )
                conn.execute("SELECT * FROM no_such_table")
        assert tracker_db.list_todos(segment.id, TODAY) == []


class TestTrackerDBMigration:
    def test_migration_upgrades_old_schema(self, tmp_db_path):
        """Simulate a database from an older release, verify migration works."""
        conn = sqlite3.connect(tmp_db_path)
        conn.executescript("""
            CREATE TABLE segments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                overall_goal TEXT,
                color TEXT DEFAULT '#6e6e73',
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );
            CREATE TABLE todos (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                segment_id INTEGER NOT NULL,
                title TEXT NOT NULL,
                completed BOOLEAN DEFAULT 0,
                date DATE NOT NULL,
                type TEXT DEFAULT 'daily',
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );
            CREATE TABLE evaluations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                segment_id INTEGER NOT NULL,
                date DATE NOT NULL,
                achievement_score REAL DEFAULT 0,
                goal_design_score REAL DEFAULT 0,
                consistency_score REAL DEFAULT 0,
                total_todos INTEGER DEFAULT 0,
                completed_todos INTEGER DEFAULT 0,
                achieved_todos INTEGER DEFAULT 0,
                partially_achieved_todos INTEGER DEFAULT 0,
                total_milestones INTEGER DEFAULT 0,
                completed_milestones INTEGER DEFAULT 0,
                achieved_milestones INTEGER DEFAULT 0,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );
            INSERT INTO segments (name) VALUES ('Old segment');
            INSERT INTO todos (segment_id, title, date) VALUES (1, 'Old todo', '2026-01-01');
            INSERT INTO evaluations (segment_id, date, total_todos) VALUES (1, '2026-01-01', 100);
            INSERT INTO evaluations (segment_id, date, total_todos) VALUES (1, '2026-01-01', 300);
        """)
        conn.commit()
        conn.close()

        db = TrackerDB(db_path=tmp_db_path)

        todos = db.list_todos(1, "2026-01-01")
        assert len(todos) == 1
        assert todos[0].title == "Old todo"
        assert todos[0].achievement_level is AchievementLevel.PENDING
        assert todos[0].display_order == 0
        assert todos[0].is_from_habit is False

        from siriustrack.core.evaluation import list_evaluations
        evaluations = list_evaluations(db, 1)
        assert len(evaluations) == 1
        assert evaluations[0].total_todos == 300
        assert evaluations[0].overdue_tasks == 0


class TestOverallPurpose:
    def test_none_until_saved(self, tracker_db):
        assert tracker_db.get_overall_purpose() is None

    def test_save_replaces_single_row(self, tracker_db):
        tracker_db.save_overall_purpose("Live well", "Health first", "Run a marathon")
        saved = tracker_db.save_overall_purpose("Live deliberately", goal="Write a book")

        assert saved.id == 1
        assert saved.title == "Live deliberately"
        assert saved.description == ""
        assert saved.goal == "Write a book"
        with tracker_db.reader() as conn:
            assert conn.execute("SELECT COUNT(*) FROM overall_purpose").fetchone()[0] == 1

    def test_blank_title_rejected(self, tracker_db):
        with pytest.raises(ValidationError):
            tracker_db.save_overall_purpose("  ")


class TestReordering:
    def test_reorder_todos(self, tracker_db, segment):
        a = tracker_db.add_todo(segment.id, "A", TODAY)
        b = tracker_db.add_todo(segment.id, "B", TODAY)
        assert tracker_db.reorder_todos([(a.id, 2), (b.id, 1)]) == 2
        assert [t.title for t in tracker_db.list_todos(segment.id, TODAY)] == ["B", "A"]

    def test_reorder_milestones(self, tracker_db, segment):
        a = tracker_db.add_milestone(segment.id, "A", "2026-04-01")
        b = tracker_db.add_milestone(segment.id, "B", "2026-05-01")
        tracker_db.reorder_milestones([(a.id, 5), (b.id, 1)])
        assert [m.title for m in tracker_db.list_milestones(segment.id)] == ["B", "A"]

    def test_reorder_discussion_items(self, tracker_db, segment):
        a = tracker_db.add_discussion_item(segment.id, "A")
        b = tracker_db.add_discussion_item(segment.id, "B")
        tracker_db.reorder_discussion_items([(b.id, 0)])
        assert [d.content for d in tracker_db.list_discussion_items(segment.id)] == ["B", "A"]

    def test_unknown_id_aborts_whole_reorder(self, tracker_db, segment):
        a = tracker_db.add_todo(segment.id, "A", TODAY)
        with pytest.raises(NotFoundError):
            tracker_db.reorder_todos([(a.id, 9), (999, 1)])
        assert tracker_db.get_todo(a.id).display_order == 1


class TestMilestoneStatus:
    def test_status_keeps_level_and_point_in_sync(self, tracker_db, segment):
        ms = tracker_db.add_milestone(segment.id, "10k race", "2026-04-01")

        done = tracker_db.set_milestone_status(ms.id, "completed")
        assert done.status is MilestoneStatus.COMPLETED
        assert done.achievement_level is AchievementLevel.ACHIEVED
        assert tracker_db.total_points(segment.id) == 1

        back = tracker_db.set_milestone_status(ms.id, MilestoneStatus.PENDING)
        assert back.achievement_level is AchievementLevel.PENDING
        assert tracker_db.total_points(segment.id) == 0

    def test_unknown_status_rejected(self, tracker_db, segment):
        ms = tracker_db.add_milestone(segment.id, "10k race", "2026-04-01")
        with pytest.raises(ValidationError):
            tracker_db.set_milestone_status(ms.id, "abandoned")


class TestDiscussionMemos:
    def test_toggle_and_delete_single_item(self, tracker_db, segment):
        item = tracker_db.add_discussion_item(segment.id, "Sleep schedule")
        assert tracker_db.toggle_discussion_item(item.id).resolved is True
        reopened = tracker_db.toggle_discussion_item(item.id)
        assert reopened.resolved is False
        assert reopened.resolved_at is None

        tracker_db.delete_discussion_item(item.id)
        assert tracker_db.list_discussion_items(segment.id) == []
        with pytest.raises(NotFoundError):
            tracker_db.delete_discussion_item(item.id)

    def test_save_memo_overwrites_latest(self, tracker_db, segment):
        item = tracker_db.add_discussion_item(segment.id, "Sleep schedule")

        tracker_db.save_discussion_memo(item.id, "Try 23:00", resolved=False)
        updated = tracker_db.save_discussion_memo(item.id, " Lights out at 22:30 ", resolved=True)

        assert updated.resolved is True
        memos = tracker_db.list_discussion_memos(item.id)
        assert [m.memo for m in memos] == ["Lights out at 22:30"]

    def test_blank_memo_only_sets_flag(self, tracker_db, segment):
        item = tracker_db.add_discussion_item(segment.id, "Sleep schedule")
        updated = tracker_db.save_discussion_memo(item.id, "   ", resolved=True)
        assert updated.resolved is True
        assert tracker_db.list_discussion_memos(item.id) == []

    def test_add_memo_keeps_history(self, tracker_db, segment):
        item = tracker_db.add_discussion_item(segment.id, "Sleep schedule")
        tracker_db.add_discussion_memo(item.id, "First thought")
        tracker_db.add_discussion_memo(item.id, "Second thought")
        assert len(tracker_db.list_discussion_memos(item.id)) == 2

        tracker_db.delete_discussion_item(item.id)
        assert tracker_db.list_discussion_memos(item.id) == []

    def test_memo_on_missing_item_raises(self, tracker_db):
        with pytest.raises(NotFoundError):
            tracker_db.add_discussion_memo(999, "Orphan")
        with pytest.raises(NotFoundError):
            tracker_db.save_discussion_memo(999, "Orphan", resolved=False)


class TestStoreDeadline:
    def test_expired_deadline_rolls_back(self, tracker_db, segment):
        with deadline(0.01):
            time.sleep(0.05)
            with pytest.raises(StorageUnavailableError):
                with tracker_db.transaction() as conn:
                    conn.execute(
                        "INSERT INTO todos (segment_id, title, date) VALUES (?, ?, ?)",
                        (segment.id, "Too late", TODAY),
                    )
        assert tracker_db.list_todos(segment.id, TODAY) == []

    def test_deadline_does_not_outlive_block(self, tracker_db, segment):
        with deadline(0.01):
            pass
        time.sleep(0.05)
        assert tracker_db.add_todo(segment.id, "On time", TODAY).title == "On time"
