from datetime import datetime

import pytest

from src.core.constants import FAR_FUTURE_TIMESTAMP
from src.core.enums import MutationType
from src.core.exceptions import PlanningError
from src.core.rows import PlannedRow, Row
from src.engine.adapters.local_dataset import LocalDataset
from src.engine.adapters.planners import (
    AppendPlanner,
    DeletePlanner,
    DeletePlannerOptions,
    HistoryPlanner,
    HistoryPlannerOptions,
    MergePlanner,
    MergePlannerOptions,
    UpsertPlanner,
    UpsertPlannerOptions,
)

from tests.fakes import rows_of

KEY = Row.from_mapping({"id": 1})


def _upsert(**kw):
    return UpsertPlanner(UpsertPlannerOptions(key_field_names=["id"], **kw))


# ----------------------------
# upsert
# ----------------------------

def test_upsert_with_no_existing_emits_single_upsert():
    arriving = rows_of({"id": 1, "val": "a"})

    planned = _upsert().plan_mutations_for_key(KEY, arriving, [])

    assert planned == [PlannedRow(MutationType.UPSERT, Row.from_mapping({"id": 1, "val": "a"}))]


def test_upsert_changed_value_emits_only_arriving_row():
    existing = rows_of({"id": 1, "val": "a"})
    arriving = rows_of({"id": 1, "val": "b"})

    planned = _upsert().plan_mutations_for_key(KEY, arriving, existing)

    assert planned == [PlannedRow(MutationType.UPSERT, Row.from_mapping({"id": 1, "val": "b"}))]


def test_upsert_unchanged_row_emits_nothing():
    existing = rows_of({"id": 1, "val": "a", "updated_at": "2024-01-01"})
    arriving = rows_of({"id": 1, "val": "a"})

    assert _upsert().plan_mutations_for_key(KEY, arriving, existing) == []


def test_upsert_multiple_arriving_last_write_wins_by_ordering_field():
    arriving = rows_of(
        {"id": 1, "val": "second", "ts": 2},
        {"id": 1, "val": "third", "ts": 3},
        {"id": 1, "val": "first", "ts": 1},
    )

    planned = _upsert(last_updated_field_name="ts").plan_mutations_for_key(KEY, arriving, [])

    assert [p.row["val"] for p in planned] == ["third"]


def test_upsert_multiple_arriving_without_ordering_field_is_rejected():
    arriving = rows_of({"id": 1, "val": "a"}, {"id": 1, "val": "b"})

    with pytest.raises(PlanningError):
        _upsert().plan_mutations_for_key(KEY, arriving, [])


def test_upsert_older_than_existing_is_skipped():
    existing = rows_of({"id": 1, "val": "new", "ts": 10})
    arriving = rows_of({"id": 1, "val": "stale", "ts": 5})

    assert _upsert(last_updated_field_name="ts").plan_mutations_for_key(
        KEY, arriving, existing
    ) == []


def test_upsert_tie_on_ordering_field_is_rejected_in_any_order():
    a = {"id": 1, "val": "a", "ts": 3}
    b = {"id": 1, "val": "b", "ts": 3}
    planner = _upsert(last_updated_field_name="ts")

    for arriving in (rows_of(a, b), rows_of(b, a)):
        with pytest.raises(PlanningError, match="share ts=3"):
            planner.plan_mutations_for_key(KEY, arriving, [])


def test_upsert_identical_duplicates_are_not_a_tie():
    arriving = rows_of({"id": 1, "val": "a", "ts": 3}, {"id": 1, "val": "a", "ts": 3})

    planned = _upsert(last_updated_field_name="ts").plan_mutations_for_key(KEY, arriving, [])

    assert [p.row["val"] for p in planned] == ["a"]


def test_upsert_compares_with_latest_existing_row_only():
    # в sink две строки ключа; откат к старому значению должен записаться
    existing = rows_of({"id": 1, "val": "a", "ts": 1}, {"id": 1, "val": "b", "ts": 2})
    planner = _upsert(last_updated_field_name="ts")

    revert = planner.plan_mutations_for_key(
        KEY, rows_of({"id": 1, "val": "a", "ts": 3}), list(reversed(existing))
    )
    same_as_latest = planner.plan_mutations_for_key(
        KEY, rows_of({"id": 1, "val": "b", "ts": 2}), existing
    )

    assert revert == [
        PlannedRow(MutationType.UPSERT, Row.from_mapping({"id": 1, "val": "a", "ts": 3}))
    ]
    assert same_as_latest == []


def test_upsert_several_existing_without_ordering_field_is_rejected():
    existing = rows_of({"id": 1, "val": "a"}, {"id": 1, "val": "b"})

    with pytest.raises(PlanningError, match="existing rows"):
        _upsert().plan_mutations_for_key(KEY, rows_of({"id": 1, "val": "a"}), existing)


def test_null_key_is_planning_error():
    key = Row.from_mapping({"id": None})
    with pytest.raises(PlanningError):
        _upsert().plan_mutations_for_key(key, rows_of({"id": None, "val": "a"}), [])


def test_upsert_planner_is_pure():
    existing = rows_of({"id": 1, "val": "a"})
    arriving = rows_of({"id": 1, "val": "b"})
    before = (list(existing), list(arriving))

    planner = _upsert()
    first = planner.plan_mutations_for_key(KEY, arriving, existing)
    second = planner.plan_mutations_for_key(KEY, arriving, existing)

    assert first == second
    assert (existing, arriving) == before


# ----------------------------
# history
# ----------------------------

def _history():
    return HistoryPlanner(
        HistoryPlannerOptions(
            key_field_names=["id"],
            timestamp_field_name="ts",
        )
    )


T1 = datetime(2024, 1, 1)
T2 = datetime(2024, 2, 1)
T3 = datetime(2024, 3, 1)


def test_history_first_version_is_open_and_current():
    planned = _history().plan_mutations_for_key(KEY, rows_of({"id": 1, "val": "a", "ts": T1}), [])

    assert len(planned) == 1
    p = planned[0]
    assert p.mutation_type is MutationType.INSERT
    assert p.row["effective_from"] == T1
    assert p.row["effective_to"] == FAR_FUTURE_TIMESTAMP
    assert p.row["is_current"] is True


def test_history_change_closes_current_existing_version():
    current = Row.from_mapping(
        {"id": 1, "val": "a", "ts": T1, "effective_from": T1,
         "effective_to": FAR_FUTURE_TIMESTAMP, "is_current": True}
    )
    older = Row.from_mapping(
        {"id": 1, "val": "z", "ts": T1, "effective_from": datetime(2023, 1, 1),
         "effective_to": T1, "is_current": False}
    )

    planned = _history().plan_mutations_for_key(
        KEY, rows_of({"id": 1, "val": "b", "ts": T2}), [current, older]
    )

    assert [p.mutation_type for p in planned] == [MutationType.UPDATE, MutationType.INSERT]
    closed, opened = planned[0].row, planned[1].row
    assert closed["val"] == "a"
    assert closed["effective_to"] == T2
    assert closed["is_current"] is False
    assert opened["val"] == "b"
    assert opened["effective_from"] == T2


def test_history_same_values_as_current_emit_nothing():
    current = Row.from_mapping(
        {"id": 1, "val": "a", "ts": T1, "effective_from": T1,
         "effective_to": FAR_FUTURE_TIMESTAMP, "is_current": True}
    )
    assert _history().plan_mutations_for_key(
        KEY, rows_of({"id": 1, "val": "a", "ts": T2}), [current]
    ) == []


def test_history_multiple_arriving_become_ordered_versions():
    arriving = rows_of(
        {"id": 1, "val": "c", "ts": T3},
        {"id": 1, "val": "a", "ts": T1},
        {"id": 1, "val": "b", "ts": T2},
    )

    planned = _history().plan_mutations_for_key(KEY, arriving, [])

    assert all(p.mutation_type is MutationType.INSERT for p in planned)
    assert [(p.row["val"], p.row["effective_from"], p.row["effective_to"]) for p in planned] == [
        ("a", T1, T2),
        ("b", T2, T3),
        ("c", T3, FAR_FUTURE_TIMESTAMP),
    ]
    assert [p.row["is_current"] for p in planned] == [False, False, True]


def test_history_arriving_older_than_current_is_skipped():
    current = Row.from_mapping(
        {"id": 1, "val": "a", "ts": T2, "effective_from": T2,
         "effective_to": FAR_FUTURE_TIMESTAMP, "is_current": True}
    )
    assert _history().plan_mutations_for_key(
        KEY, rows_of({"id": 1, "val": "old", "ts": T1}), [current]
    ) == []


# ----------------------------
# delete
# ----------------------------

def test_delete_emits_one_delete_per_existing_row():
    planner = DeletePlanner(DeletePlannerOptions(key_field_names=["id"]))
    existing = rows_of({"id": 1, "v": 1}, {"id": 1, "v": 2})

    planned = planner.plan_mutations_for_key(KEY, rows_of({"id": 1}, {"id": 1}), existing)

    assert [p.mutation_type for p in planned] == [MutationType.DELETE] * 2
    assert [p.row for p in planned] == existing
    assert planner.plan_mutations_for_key(KEY, rows_of({"id": 1}), []) == []


# ----------------------------
# set-scoped
# ----------------------------

@pytest.mark.asyncio
async def test_append_is_one_insert_group_over_the_whole_batch():
    batch = LocalDataset.from_rows(rows_of({"id": 1}, {"id": 2}), num_partitions=2)

    groups = AppendPlanner().plan_mutations_for_set(batch)

    assert [mt for mt, _ in groups] == [MutationType.INSERT]
    assert await groups[0][1].collect() == rows_of({"id": 1}, {"id": 2})


@pytest.mark.asyncio
async def test_merge_groups_union_equals_row_by_row_pass():
    rows = rows_of(
        {"id": 1, "val": "a", "deleted": False},
        {"id": 2, "val": "b", "deleted": True},
        {"id": 3, "val": "c", "deleted": None},
        {"id": 4, "val": "d", "deleted": True},
        {"id": 5, "val": "e", "deleted": False},
    )
    planner = MergePlanner(MergePlannerOptions(delete_flag_field_name="deleted"))
    groups = planner.plan_mutations_for_set(LocalDataset.from_rows(rows, num_partitions=3))

    assert [mt for mt, _ in groups] == [MutationType.UPSERT, MutationType.DELETE]

    by_group = [(mt, row) for mt, ds in groups for row in await ds.collect()]
    row_by_row = [
        (MutationType.DELETE if r["deleted"] else MutationType.UPSERT, r) for r in rows
    ]
    assert sorted(by_group, key=lambda p: p[1]["id"]) == row_by_row
    assert len(by_group) == len(rows)


def test_emitted_mutation_types_are_declared_per_planner():
    assert _upsert().emitted_mutation_types() == {MutationType.UPSERT}
    assert _history().emitted_mutation_types() == {MutationType.INSERT, MutationType.UPDATE}
    assert MergePlanner(MergePlannerOptions()).emitted_mutation_types() == {MutationType.UPSERT}
    assert MergePlanner(
        MergePlannerOptions(delete_flag_field_name="deleted")
    ).emitted_mutation_types() == {MutationType.UPSERT, MutationType.DELETE}
