import asyncio
import itertools

import pytest

from conftest import STUDENT_A, STUDENT_B
from workbook_tracker.core.errors import PersistenceError, ValidationError
from workbook_tracker.db.models import Chapter, GradeSheet, Mark
from workbook_tracker.db.store import CHAPTERS, GRADE_SHEETS
from workbook_tracker.services.autosave import AutoSavePersister
from workbook_tracker.services.chapters import (
    ChapterPartition,
    FilterMode,
    chapter_summary,
    default_chapter,
    effective_range,
    filter_view,
    recent_chapter,
)
from workbook_tracker.services.grade_sheets import GradeSheetEditor


def make_partition(store):
    autosave = AutoSavePersister(delay=60)
    return ChapterPartition(store, GradeSheetEditor(store, autosave), autosave)


def sheet_of(count, marks=None):
    return GradeSheet(id="s", owner_id="o", title="t", problem_count=count, marks=marks or [])


def chapter_of(start, end, **extra):
    return Chapter(id=extra.pop("id", "c"), grade_id="s", start_idx=start, end_idx=end, **extra)


def test_effective_range_is_always_ordered_and_in_bounds():
    values = [-50, -1, 0, 1, 4, 9, 10, 11, 500]
    for count in (1, 5, 10):
        sheet = sheet_of(count)
        for start, end in itertools.product(values, values):
            lo, hi = effective_range(chapter_of(start, end), sheet)
            assert 0 <= lo <= hi <= count - 1, (count, start, end)


def test_effective_range_examples():
    sheet = sheet_of(10)
    assert effective_range(chapter_of(2, 5), sheet) == (2, 5)
    assert effective_range(chapter_of(7, 3), sheet) == (3, 7)
    assert effective_range(chapter_of(8, 25), sheet) == (8, 9)
    assert effective_range(chapter_of(-3, 2), sheet) == (0, 2)


def test_effective_range_on_empty_sheet():
    assert effective_range(chapter_of(0, 4), sheet_of(0)) is None
    assert filter_view(chapter_of(0, 4), sheet_of(0)) == []


def test_filter_modes():
    sheet = sheet_of(6, ["O", "X", "", "T", "X", ""])
    chapter = chapter_of(1, 4)
    assert filter_view(chapter, sheet, FilterMode.ALL) == [1, 2, 3, 4]
    assert filter_view(chapter, sheet, FilterMode.INCORRECT_ONLY) == [1, 4]
    assert filter_view(chapter, sheet, FilterMode.BLANK_ONLY) == [2]
    assert filter_view(chapter, sheet, FilterMode.INCORRECT_OR_BLANK) == [1, 2, 4]
    assert filter_view(chapter, sheet, "blank_only") == [2]


def test_chapter_summary_counts_effective_range():
    sheet = sheet_of(4, ["O", "X", "X", "T"])
    counts = chapter_summary(chapter_of(3, 1), sheet)
    assert counts == {Mark.UNMARKED: 0, Mark.CORRECT: 0, Mark.INCORRECT: 2, Mark.PARTIAL: 1}


def test_default_chapter_is_latest_updated_first_on_ties():
    first = chapter_of(0, 4, id="a", updated_at="2024-03-01T00:00:00+00:00")
    second = chapter_of(5, 9, id="b", updated_at="2024-03-02T00:00:00+00:00")
    third = chapter_of(10, 14, id="c", updated_at="2024-03-02T00:00:00+00:00")
    assert default_chapter([third, first, second]).id == "b"
    assert default_chapter([chapter_of(5, 9, id="x"), chapter_of(0, 4, id="y")]).id == "y"
    assert default_chapter([]) is None


def test_load_orders_by_range(store, seed):
    row = seed.sheet(STUDENT_A, 10)
    seed.chapter(row["id"], 5, 9, title="later")
    seed.chapter(row["id"], 0, 4, title="first")

    async def scenario():
        return await make_partition(store).load(row["id"])

    chapters = asyncio.run(scenario())
    assert [c.chapter_title for c in chapters] == ["first", "later"]


@pytest.mark.parametrize("previous, count", [(0, 1), (10, 5), (40, 20)])
def test_create_chapter_appends_at_the_tail(store, seed, previous, count):
    row = seed.sheet(STUDENT_A, previous)

    async def scenario():
        partition = make_partition(store)
        await partition.sheets.load(row["id"])
        chapter = await partition.create_chapter(row["id"], "New", count)
        return partition.sheets.get(row["id"]), chapter

    sheet, chapter = asyncio.run(scenario())
    assert sheet.problem_count == previous + count
    assert (chapter.start_idx, chapter.end_idx) == (previous, previous + count - 1)
    assert len(sheet.marks) == len(sheet.labels) == sheet.problem_count
    assert seed.row(GRADE_SHEETS, row["id"])["problem_count"] == previous + count


@pytest.mark.parametrize("count", [0, -3, True])
def test_create_chapter_rejects_bad_counts(store, seed, count):
    row = seed.sheet(STUDENT_A, 5)

    async def scenario():
        partition = make_partition(store)
        await partition.sheets.load(row["id"])
        with pytest.raises(ValidationError):
            await partition.create_chapter(row["id"], "Bad", count)
        return partition.sheets.get(row["id"])

    assert asyncio.run(scenario()).problem_count == 5
    assert store.calls == []


def test_create_chapter_undoes_expansion_when_insert_fails(store, seed):
    row = seed.sheet(STUDENT_A, 5, marks=["O"] * 5)
    store.fail("insert", CHAPTERS)

    async def scenario():
        partition = make_partition(store)
        await partition.sheets.load(row["id"])
        with pytest.raises(PersistenceError):
            await partition.create_chapter(row["id"], "Ch", 10)
        return partition.sheets.get(row["id"])

    sheet = asyncio.run(scenario())
    assert sheet.problem_count == 5
    assert sheet.marks == [Mark.CORRECT] * 5
    stored = seed.row(GRADE_SHEETS, row["id"])
    assert stored["problem_count"] == 5
    assert len(stored["marks"]) == len(stored["labels"]) == 5
    assert store.tables.get(CHAPTERS, []) == []


def test_rename_and_delete_chapter(store, seed):
    row = seed.sheet(STUDENT_A, 5)
    ch = seed.chapter(row["id"], 0, 4, title="Old")

    async def scenario():
        partition = make_partition(store)
        renamed = await partition.rename_chapter(ch["id"], "  ")
        title = renamed.chapter_title
        await partition.delete_chapter(ch["id"])
        return title

    assert asyncio.run(scenario()) is None
    assert store.tables[CHAPTERS] == []


def test_text_edits_are_debounced_and_record_last_edited(store, seed):
    row = seed.sheet(STUDENT_A, 5)
    ch = seed.chapter(row["id"], 0, 4)

    async def scenario():
        partition = make_partition(store)
        await partition.sheets.load(row["id"])
        await partition.load(row["id"])
        for text in ("w", "wo", "work on signs"):
            partition.edit_text(ch["id"], chapter_note=text)
        partition.edit_text(ch["id"], teacher_memo="watch the minus")
        assert store.writes(CHAPTERS) == []
        await partition.autosave.flush()
        return partition

    partition = asyncio.run(scenario())
    stored = seed.row(CHAPTERS, ch["id"])
    assert stored["chapter_note"] == "work on signs"
    assert stored["note"] == "work on signs"
    assert stored["teacher_memo"] == "watch the minus"
    assert store.writes(CHAPTERS) == ["update"]
    assert seed.row(GRADE_SHEETS, row["id"])["last_edited_chapter_id"] == ch["id"]
    assert partition.sheets.get(row["id"]).last_edited_chapter_id == ch["id"]


def test_mark_chapter_uses_effective_range(store, seed):
    row = seed.sheet(STUDENT_A, 6)
    ch = seed.chapter(row["id"], 9, 3)

    async def scenario():
        partition = make_partition(store)
        await partition.sheets.load(row["id"])
        await partition.load(row["id"])
        partition.mark_chapter(ch["id"], "X")
        await partition.autosave.close()
        return partition.sheets.get(row["id"]).marks

    marks = asyncio.run(scenario())
    assert marks == [Mark.UNMARKED] * 3 + [Mark.INCORRECT] * 3


def test_recent_chapter_follows_last_edited(store, seed):
    older = seed.sheet(STUDENT_A, 5, updated_at="2024-01-01T00:00:00+00:00")
    seed.chapter(older["id"], 0, 4)
    newer = seed.sheet(STUDENT_A, 10, title="Newer", updated_at="2024-02-01T00:00:00+00:00")
    picked = seed.chapter(newer["id"], 0, 4, updated_at="2024-01-05T00:00:00+00:00")
    seed.chapter(newer["id"], 5, 9, updated_at="2024-01-20T00:00:00+00:00")
    newer["last_edited_chapter_id"] = picked["id"]

    sheet, chapter = asyncio.run(recent_chapter(store, STUDENT_A))
    assert sheet.id == newer["id"]
    assert chapter.id == picked["id"]


def test_recent_chapter_falls_back_to_latest_updated(store, seed):
    row = seed.sheet(STUDENT_B, 10, last_edited_chapter_id="gone")
    seed.chapter(row["id"], 0, 4, updated_at="2024-01-05T00:00:00+00:00")
    latest = seed.chapter(row["id"], 5, 9, updated_at="2024-01-20T00:00:00+00:00")

    _, chapter = asyncio.run(recent_chapter(store, STUDENT_B))
    assert chapter.id == latest["id"]
    assert asyncio.run(recent_chapter(store, STUDENT_A)) is None
