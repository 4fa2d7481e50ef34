"""Property-based tests for per-project exclusive selection.

At most one issue per project may be in flight. Selection over a locked
snapshot admits the oldest TODO issue of every project that has no WIP or
CONFIRM NEEDED issue.
"""

from datetime import datetime, timedelta, timezone
from typing import List

from hypothesis import given, settings, strategies as st

from src.dispatcher.lifecycle import BLOCKING_LABELS, LifecycleLabel
from src.dispatcher.scheduler import IssueRecord, blocking_counts, select_oldest_unblocked


BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _record(issue_id: int, project_id: int, label: LifecycleLabel, age_minutes: int) -> IssueRecord:
    return IssueRecord(
        record_id=issue_id,
        issue_id=issue_id,
        iid=issue_id,
        project_id=project_id,
        labels=["auto-container", label.value],
        created_at=BASE + timedelta(minutes=age_minutes),
    )


@st.composite
def snapshots(draw) -> List[IssueRecord]:
    count = draw(st.integers(min_value=0, max_value=25))
    records = []
    for issue_id in range(1, count + 1):
        records.append(
            _record(
                issue_id=issue_id,
                project_id=draw(st.integers(min_value=1, max_value=4)),
                label=draw(
                    st.sampled_from(
                        [LifecycleLabel.TODO, LifecycleLabel.WIP, LifecycleLabel.CONFIRM_NEEDED]
                    )
                ),
                age_minutes=draw(st.integers(min_value=0, max_value=10_000)),
            )
        )
    return draw(st.permutations(records))


class TestSelectionExamples:
    def test_oldest_todo_wins(self):
        newer = _record(1, 10, LifecycleLabel.TODO, age_minutes=60)
        older = _record(2, 10, LifecycleLabel.TODO, age_minutes=5)

        assert select_oldest_unblocked([newer, older]) == [older]

    def test_blocked_project_admits_nothing(self):
        todo = _record(1, 10, LifecycleLabel.TODO, age_minutes=0)
        wip = _record(2, 10, LifecycleLabel.WIP, age_minutes=30)

        assert select_oldest_unblocked([todo, wip]) == []

    def test_confirm_needed_blocks(self):
        todo = _record(1, 10, LifecycleLabel.TODO, age_minutes=0)
        review = _record(2, 10, LifecycleLabel.CONFIRM_NEEDED, age_minutes=30)

        assert select_oldest_unblocked([todo, review]) == []

    def test_projects_are_independent(self):
        blocked_todo = _record(1, 10, LifecycleLabel.TODO, age_minutes=0)
        blocker = _record(2, 10, LifecycleLabel.WIP, age_minutes=0)
        free_todo = _record(3, 20, LifecycleLabel.TODO, age_minutes=0)

        assert select_oldest_unblocked([blocked_todo, blocker, free_todo]) == [free_todo]

    def test_result_ordered_by_project(self):
        a = _record(1, 30, LifecycleLabel.TODO, age_minutes=0)
        b = _record(2, 10, LifecycleLabel.TODO, age_minutes=0)

        assert [r.project_id for r in select_oldest_unblocked([a, b])] == [10, 30]

    def test_ineligible_todo_is_passed_over(self):
        stale = _record(1, 10, LifecycleLabel.TODO, age_minutes=0)
        stale.eligible = False
        fresh = _record(2, 10, LifecycleLabel.TODO, age_minutes=30)

        assert select_oldest_unblocked([stale, fresh]) == [fresh]

    def test_ineligible_wip_still_blocks(self):
        todo = _record(1, 10, LifecycleLabel.TODO, age_minutes=0)
        wip = _record(2, 10, LifecycleLabel.WIP, age_minutes=30)
        wip.eligible = False

        assert select_oldest_unblocked([todo, wip]) == []

    def test_blocking_counts(self):
        records = [
            _record(1, 10, LifecycleLabel.TODO, 0),
            _record(2, 10, LifecycleLabel.WIP, 0),
            _record(3, 20, LifecycleLabel.TODO, 0),
        ]

        assert blocking_counts(records) == {10: 1, 20: 0}


class TestSelectionProperties:
    @settings(max_examples=200)
    @given(snapshot=snapshots())
    def test_at_most_one_per_project(self, snapshot):
        selected = select_oldest_unblocked(snapshot)

        projects = [record.project_id for record in selected]
        assert len(projects) == len(set(projects))

    @settings(max_examples=200)
    @given(snapshot=snapshots())
    def test_never_selects_in_blocked_project(self, snapshot):
        blocked = {
            record.project_id
            for record in snapshot
            if record.lifecycle_label in BLOCKING_LABELS
        }

        for record in select_oldest_unblocked(snapshot):
            assert record.project_id not in blocked
            assert record.lifecycle_label == LifecycleLabel.TODO

    @settings(max_examples=200)
    @given(snapshot=snapshots())
    def test_every_unblocked_project_with_todo_gets_its_oldest(self, snapshot):
        selected = {record.project_id: record for record in select_oldest_unblocked(snapshot)}
        counts = blocking_counts(snapshot)

        for project_id, blocking in counts.items():
            todos = [
                record
                for record in snapshot
                if record.project_id == project_id
                and record.lifecycle_label == LifecycleLabel.TODO
            ]
            if blocking or not todos:
                assert project_id not in selected
            else:
                oldest = min(todo.created_at for todo in todos)
                assert selected[project_id].created_at == oldest

    @settings(max_examples=100)
    @given(snapshot=snapshots())
    def test_selection_then_start_keeps_exclusivity(self, snapshot):
        """Moving every selected issue to WIP leaves one blocker per project."""
        selected_ids = {record.issue_id for record in select_oldest_unblocked(snapshot)}
        after = [
            record.model_copy(
                update={"labels": ["auto-container", LifecycleLabel.WIP.value]}
            )
            if record.issue_id in selected_ids
            else record
            for record in snapshot
        ]

        started_projects = {r.project_id for r in after if r.issue_id in selected_ids}
        counts = blocking_counts(after)
        for project_id in started_projects:
            assert counts[project_id] == 1
        for record in select_oldest_unblocked(after):
            assert record.project_id not in started_projects
