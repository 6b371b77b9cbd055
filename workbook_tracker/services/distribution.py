"""
Template distribution.

Copies a workbook's template sheet and chapters onto many owners. The sheet
rows are upserted on ``(owner_id, workbook_id)`` in one batch; each target's
chapters are then replaced independently on a bounded worker pool. A target
that fails is reported and left as is; the others carry on.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set

from workbook_tracker.core.errors import (
    FatalPrecondition,
    PartialDistributionError,
    PersistenceError,
    ValidationError,
)
from workbook_tracker.db.models import Chapter, GradeSheet, Mark, Workbook
from workbook_tracker.db.store import (
    CHAPTERS,
    GRADE_SHEETS,
    SHEET_KEY,
    WORKBOOKS,
    RecordStore,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

CLONED_CHAPTER_FIELDS = (
    "start_idx",
    "end_idx",
    "chapter_title",
    "chapter_note",
    "teacher_memo",
    "next_homework",
)


@dataclass
class DistributionStatus:
    already: Set[str] = field(default_factory=set)
    not_yet: Set[str] = field(default_factory=set)


@dataclass
class DistributionReport:
    workbook_id: str
    requested: List[str]
    targets: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    chapter_count: int = 0

    @property
    def nothing_to_do(self) -> bool:
        return not self.targets

    @property
    def ok(self) -> bool:
        return not self.failed


class DistributionEngine:
    def __init__(self, store: RecordStore, max_workers: int = 4):
        self.store = store
        self.max_workers = max(1, max_workers)

    async def load_template(self, workbook_id: str):
        """The workbook, its canonical sheet (owned by the author) and its chapters."""
        row = await self.store.get(WORKBOOKS, workbook_id)
        if row is None:
            raise FatalPrecondition(f"Workbook {workbook_id} not found")
        workbook = Workbook(**row)

        rows = await self.store.select(
            GRADE_SHEETS, eq={"owner_id": workbook.author_id, "workbook_id": workbook_id}, limit=1
        )
        if not rows:
            raise FatalPrecondition(f"Template sheet for workbook {workbook_id} not found")
        template = GradeSheet(**rows[0])

        chapter_rows = await self.store.select(
            CHAPTERS, eq={"grade_id": template.id}, order=[("start_idx", False), ("end_idx", False)]
        )
        return workbook, template, [Chapter(**r) for r in chapter_rows]

    async def status(self, workbook_id: str, owner_ids: Iterable[str]) -> DistributionStatus:
        ids = set(owner_ids)
        if not ids:
            return DistributionStatus()
        rows = await self.store.select(GRADE_SHEETS, eq={"workbook_id": workbook_id}, in_={"owner_id": ids})
        already = {r["owner_id"] for r in rows}
        return DistributionStatus(already=already, not_yet=ids - already)

    async def distribute(
        self,
        workbook_id: str,
        target_owner_ids: Iterable[str],
        overwrite: bool = False,
    ) -> DistributionReport:
        """
        Clone the template onto each target owner.

        Raises:
            ValidationError: no targets were given
            FatalPrecondition: the workbook or its template sheet is missing
            PersistenceError: the batch sheet upsert failed (no chapters touched)
            PartialDistributionError: some targets failed during chapter cloning
        """
        requested = list(dict.fromkeys(target_owner_ids))
        if not requested:
            raise ValidationError("Select at least one owner to distribute to")

        workbook, template, chapters = await self.load_template(workbook_id)
        # The author owns the template sheet itself; it is never a target
        owners = [o for o in requested if o != workbook.author_id]
        status = await self.status(workbook_id, owners)

        report = DistributionReport(workbook_id=workbook_id, requested=requested, chapter_count=len(chapters))
        report.targets = effective_targets(status, owners, overwrite)
        report.skipped = [o for o in requested if o not in report.targets]

        if report.nothing_to_do:
            logger.info("Distribution of %s: no owner left to distribute to", workbook_id)
            return report

        sheets = await self._upsert_sheets(template, report.targets)

        semaphore = asyncio.Semaphore(self.max_workers)

        async def clone(owner_id: str) -> None:
            sheet = sheets.get(owner_id)
            if sheet is None:
                report.failed[owner_id] = "grade sheet missing after upsert"
                return
            async with semaphore:
                try:
                    await self._replace_chapters(sheet, chapters)
                except PersistenceError as e:
                    logger.warning("Distribution of %s to %s failed: %s", workbook_id, owner_id, e.detail)
                    report.failed[owner_id] = e.detail
                    return
            report.succeeded.append(owner_id)

        await asyncio.gather(*(clone(o) for o in report.targets))
        # Keep the caller's order regardless of completion order
        report.succeeded.sort(key=report.targets.index)

        logger.info(
            "Distributed workbook %s (%s): %d succeeded, %d failed, %d skipped",
            workbook_id, workbook.title, len(report.succeeded), len(report.failed), len(report.skipped),
        )
        if report.failed:
            raise PartialDistributionError(report)
        return report

    async def _upsert_sheets(self, template: GradeSheet, owner_ids: List[str]) -> Dict[str, GradeSheet]:
        now = utcnow_iso()
        payload = [
            {
                "owner_id": owner_id,
                "workbook_id": template.workbook_id,
                "title": template.title,
                "problem_count": template.problem_count,
                # Only the shape of the template's marks is copied
                "marks": [Mark.UNMARKED.value] * template.problem_count,
                "labels": list(template.labels),
                "updated_at": now,
            }
            for owner_id in owner_ids
        ]
        await self.store.upsert(GRADE_SHEETS, payload, on_conflict=SHEET_KEY)

        rows = await self.store.select(
            GRADE_SHEETS, eq={"workbook_id": template.workbook_id}, in_={"owner_id": owner_ids}
        )
        return {r["owner_id"]: GradeSheet(**r) for r in rows}

    async def _replace_chapters(self, sheet: GradeSheet, chapters: List[Chapter]) -> None:
        await self.store.delete(CHAPTERS, grade_id=sheet.id)
        if not chapters:
            return
        rows = []
        for chapter in chapters:
            row = {name: getattr(chapter, name) for name in CLONED_CHAPTER_FIELDS}
            row["grade_id"] = sheet.id
            row["note"] = chapter.chapter_note
            rows.append(row)
        await self.store.insert(CHAPTERS, rows)


def candidates_by_status(status: DistributionStatus, owner_ids: Iterable[str], tab: str) -> List[str]:
    """Owner ids in their original order, restricted to one status tab ("already" or "not_yet")."""
    pick = status.already if tab == "already" else status.not_yet
    return [o for o in owner_ids if o in pick]


def effective_targets(status: DistributionStatus, owner_ids: Iterable[str], overwrite: bool) -> List[str]:
    ids = list(owner_ids)
    return ids if overwrite else candidates_by_status(status, ids, "not_yet")

