import asyncio
import logging

import pytest

from conftest import STUDENT_A, STUDENT_B, STUDENT_C, TEACHER
from workbook_tracker.core.errors import (
    FatalPrecondition,
    PartialDistributionError,
    PersistenceError,
    ValidationError,
)
from workbook_tracker.db.store import CHAPTERS, GRADE_SHEETS, WORKBOOKS
from workbook_tracker.services.autosave import AutoSavePersister
from workbook_tracker.services.directory import OwnerDirectory
from workbook_tracker.services.distribution import DistributionEngine
from workbook_tracker.services.grade_sheets import GradeSheetEditor
from workbook_tracker.services.workbooks import WorkbookService


def algebra_basics(seed):
    """Template "Algebra Basics": 40 problems, chapters Linear and Quadratic."""
    workbook = seed.workbook("Algebra Basics", total=40)
    template = seed.sheet(TEACHER, 40, workbook_id=workbook["id"], title="Algebra Basics", marks=["O"] * 40)
    seed.chapter(template["id"], 0, 19, title="Linear", chapter_note="read p.3", teacher_memo="slow down")
    seed.chapter(template["id"], 20, 39, title="Quadratic")
    return workbook, template


def sheets_for(store, workbook_id, owner_id):
    return [
        r for r in store.tables[GRADE_SHEETS]
        if r["workbook_id"] == workbook_id and r["owner_id"] == owner_id
    ]


def chapters_of(store, sheet_id):
    rows = [r for r in store.tables.get(CHAPTERS, []) if r["grade_id"] == sheet_id]
    return sorted((r["start_idx"], r["end_idx"], r["chapter_title"]) for r in rows)


def test_overwrite_scenario_gives_both_students_the_template(store, seed):
    workbook, template = algebra_basics(seed)
    stale = seed.sheet(STUDENT_B, 12, workbook_id=workbook["id"], marks=["X"] * 12)
    seed.chapter(stale["id"], 0, 11, title="Unrelated")

    report = asyncio.run(DistributionEngine(store).distribute(workbook["id"], [STUDENT_A, STUDENT_B], overwrite=True))

    assert report.ok
    assert report.succeeded == [STUDENT_A, STUDENT_B]
    assert report.chapter_count == 2
    for owner in (STUDENT_A, STUDENT_B):
        (sheet,) = sheets_for(store, workbook["id"], owner)
        assert sheet["problem_count"] == 40
        assert sheet["marks"] == [""] * 40
        assert len(sheet["labels"]) == 40
        assert chapters_of(store, sheet["id"]) == [(0, 19, "Linear"), (20, 39, "Quadratic")]
    # The stale sheet was updated in place, not duplicated
    assert sheets_for(store, workbook["id"], STUDENT_B)[0]["id"] == stale["id"]


def test_cloned_chapters_keep_text_fields(store, seed):
    workbook, _ = algebra_basics(seed)
    asyncio.run(DistributionEngine(store).distribute(workbook["id"], [STUDENT_A]))

    (sheet,) = sheets_for(store, workbook["id"], STUDENT_A)
    linear = next(r for r in store.tables[CHAPTERS] if r["grade_id"] == sheet["id"] and r["start_idx"] == 0)
    assert linear["chapter_note"] == "read p.3"
    assert linear["teacher_memo"] == "slow down"


def test_without_overwrite_is_idempotent(store, seed):
    workbook, _ = algebra_basics(seed)
    engine = DistributionEngine(store)

    async def scenario():
        first = await engine.distribute(workbook["id"], [STUDENT_A, STUDENT_B])
        status_after_first = await engine.status(workbook["id"], [STUDENT_A, STUDENT_B, STUDENT_C])
        second = await engine.distribute(workbook["id"], [STUDENT_A, STUDENT_B])
        status_after_second = await engine.status(workbook["id"], [STUDENT_A, STUDENT_B, STUDENT_C])
        return first, second, status_after_first, status_after_second

    first, second, status1, status2 = asyncio.run(scenario())
    assert first.succeeded == [STUDENT_A, STUDENT_B]
    assert second.nothing_to_do
    assert second.skipped == [STUDENT_A, STUDENT_B]
    assert status1.already == status2.already == {STUDENT_A, STUDENT_B}
    assert status2.not_yet == {STUDENT_C}
    for owner in (STUDENT_A, STUDENT_B):
        assert len(sheets_for(store, workbook["id"], owner)) == 1


def test_without_overwrite_skips_existing_owners(store, seed):
    workbook, _ = algebra_basics(seed)
    existing = seed.sheet(STUDENT_B, 3, workbook_id=workbook["id"], marks=["O", "O", "O"])
    seed.chapter(existing["id"], 0, 2, title="Mine")

    report = asyncio.run(DistributionEngine(store).distribute(workbook["id"], [STUDENT_A, STUDENT_B]))

    assert report.targets == [STUDENT_A]
    assert report.skipped == [STUDENT_B]
    untouched = seed.row(GRADE_SHEETS, existing["id"])
    assert untouched["marks"] == ["O", "O", "O"]
    assert chapters_of(store, existing["id"]) == [(0, 2, "Mine")]


def test_overwrite_replaces_chapters_regardless_of_prior_state(store, seed):
    workbook, template = algebra_basics(seed)
    target = seed.sheet(STUDENT_C, 60, workbook_id=workbook["id"])
    for start in range(0, 60, 10):
        seed.chapter(target["id"], start, start + 9, title=f"Old {start}")

    asyncio.run(DistributionEngine(store).distribute(workbook["id"], [STUDENT_C], overwrite=True))

    assert chapters_of(store, target["id"]) == chapters_of(store, template["id"])
    assert seed.row(GRADE_SHEETS, target["id"])["problem_count"] == 40


def test_missing_template_sheet_aborts_before_any_write(store, seed):
    workbook = seed.workbook("Orphan")

    async def scenario():
        engine = DistributionEngine(store)
        with pytest.raises(FatalPrecondition):
            await engine.distribute(workbook["id"], [STUDENT_A])
        with pytest.raises(FatalPrecondition):
            await engine.distribute("no-such-workbook", [STUDENT_A])

    asyncio.run(scenario())
    assert store.calls == []


def test_empty_target_list_is_rejected(store, seed):
    workbook, _ = algebra_basics(seed)

    async def scenario():
        with pytest.raises(ValidationError):
            await DistributionEngine(store).distribute(workbook["id"], [])

    asyncio.run(scenario())


def test_failed_target_is_reported_and_others_continue(store, seed):
    workbook, _ = algebra_basics(seed)
    doomed = seed.sheet(STUDENT_B, 40, workbook_id=workbook["id"])
    store.fail("insert", CHAPTERS, when=lambda rows: rows and rows[0]["grade_id"] == doomed["id"])

    async def scenario():
        with pytest.raises(PartialDistributionError) as exc:
            await DistributionEngine(store, max_workers=2).distribute(
                workbook["id"], [STUDENT_A, STUDENT_B, STUDENT_C], overwrite=True
            )
        return exc.value

    error = asyncio.run(scenario())
    report = error.report
    assert report.succeeded == [STUDENT_A, STUDENT_C]
    assert list(report.failed) == [STUDENT_B]
    assert STUDENT_B in error.detail
    for owner in (STUDENT_A, STUDENT_C):
        (sheet,) = sheets_for(store, workbook["id"], owner)
        assert chapters_of(store, sheet["id"]) == [(0, 19, "Linear"), (20, 39, "Quadratic")]


def test_failed_batch_upsert_touches_no_chapters(store, seed):
    workbook, _ = algebra_basics(seed)
    store.fail("upsert", GRADE_SHEETS)

    async def scenario():
        with pytest.raises(PersistenceError):
            await DistributionEngine(store).distribute(workbook["id"], [STUDENT_A])

    asyncio.run(scenario())
    assert store.writes(CHAPTERS) == []


def test_directory_lists_active_approved_students(store):
    students = asyncio.run(OwnerDirectory(store).list_students())
    assert [s.name for s in students] == ["Aiko", "Ben", "Chloe"]


def test_created_template_can_be_distributed(store):
    async def scenario():
        sheets = GradeSheetEditor(store, AutoSavePersister(delay=60))
        workbook, template, chapters = await WorkbookService(store, sheets).create_template(
            TEACHER, "Geometry", [("Angles", 5), ("Triangles", 7)]
        )
        report = await DistributionEngine(store).distribute(workbook.id, [STUDENT_A])
        return workbook, template, chapters, report

    workbook, template, chapters, report = asyncio.run(scenario())
    assert workbook.total_problem_count == 12
    assert template.owner_id == TEACHER
    assert template.workbook_id == workbook.id
    assert [(c.start_idx, c.end_idx) for c in chapters] == [(0, 4), (5, 11)]
    assert report.succeeded == [STUDENT_A]
    (sheet,) = sheets_for(store, workbook.id, STUDENT_A)
    assert chapters_of(store, sheet["id"]) == [(0, 4, "Angles"), (5, 11, "Triangles")]


def test_template_creation_rolls_back_workbook_when_sheet_fails(store):
    store.fail("insert", GRADE_SHEETS)

    async def scenario():
        sheets = GradeSheetEditor(store, AutoSavePersister(delay=60))
        with pytest.raises(PersistenceError):
            await WorkbookService(store, sheets).create_template(TEACHER, "Geometry", [("Angles", 5)])

    asyncio.run(scenario())
    assert store.tables[WORKBOOKS] == []


def test_author_is_never_a_distribution_target(store, seed):
    workbook = seed.workbook("Warmup", total=4)
    template = seed.sheet(TEACHER, 4, workbook_id=workbook["id"], marks=["O", "X", "T", "O"])
    original = seed.chapter(template["id"], 0, 3, title="All")
    engine = DistributionEngine(store)

    async def scenario():
        mixed = await engine.distribute(workbook["id"], [STUDENT_A, TEACHER], overwrite=True)
        alone = await engine.distribute(workbook["id"], [TEACHER], overwrite=True)
        return mixed, alone

    mixed, alone = asyncio.run(scenario())
    assert mixed.succeeded == [STUDENT_A]
    assert mixed.skipped == [TEACHER]
    assert alone.nothing_to_do
    assert alone.skipped == [TEACHER]
    assert seed.row(GRADE_SHEETS, template["id"])["marks"] == ["O", "X", "T", "O"]
    assert [r["id"] for r in store.tables[CHAPTERS] if r["grade_id"] == template["id"]] == [original["id"]]


def test_failed_workbook_cleanup_keeps_the_original_error(store, caplog):
    store.fail("insert", GRADE_SHEETS)
    store.fail("delete", WORKBOOKS)

    async def scenario():
        sheets = GradeSheetEditor(store, AutoSavePersister(delay=60))
        with pytest.raises(PersistenceError) as exc:
            await WorkbookService(store, sheets).create_template(TEACHER, "Geometry", [("Angles", 5)])
        return exc.value

    with caplog.at_level(logging.ERROR):
        error = asyncio.run(scenario())
    assert "insert" in error.detail
    assert "Could not remove workbook" in caplog.text
