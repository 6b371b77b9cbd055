from pydantic import BaseModel
from typing import Dict, List, Optional
from datetime import datetime

from workbook_tracker.schemas.sheets import ChapterSpec


class WorkbookCreate(BaseModel):
    title: str
    chapters: List[ChapterSpec] = []

    def specs(self):
        return [(c.title, c.count) for c in self.chapters]


class WorkbookResponse(BaseModel):
    id: str
    title: str
    total_problem_count: int
    author_id: str
    created_at: Optional[datetime] = None


class TemplateCreatedResponse(BaseModel):
    workbook: WorkbookResponse
    template_sheet_id: str
    chapter_count: int


class CandidateResponse(BaseModel):
    id: str
    name: Optional[str] = None
    distributed: bool


class DistributionStatusResponse(BaseModel):
    workbook_id: str
    already: List[CandidateResponse]
    not_yet: List[CandidateResponse]


class DistributeRequest(BaseModel):
    target_owner_ids: List[str]
    overwrite: bool = False


class DistributeResponse(BaseModel):
    workbook_id: str
    message: str
    targets: List[str]
    skipped: List[str]
    succeeded: List[str]
    failed: Dict[str, str]
    chapter_count: int
    nothing_to_do: bool

    @classmethod
    def from_report(cls, report) -> "DistributeResponse":
        if report.nothing_to_do:
            message = "Every selected owner already has this workbook. Turn on overwrite to resync them."
        elif report.failed:
            message = f"Distributed to {len(report.succeeded)} of {len(report.targets)}; {len(report.failed)} failed"
        else:
            message = f"Distributed to {len(report.succeeded)} (chapters synced)"
        return cls(
            workbook_id=report.workbook_id,
            message=message,
            targets=report.targets,
            skipped=report.skipped,
            succeeded=report.succeeded,
            failed=report.failed,
            chapter_count=report.chapter_count,
            nothing_to_do=report.nothing_to_do,
        )
