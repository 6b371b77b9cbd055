from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from workbook_tracker.core.dependencies import (
    get_distribution_engine,
    get_workbook_service,
    require_staff,
)
from workbook_tracker.core.errors import PartialDistributionError
from workbook_tracker.core.security import get_store
from workbook_tracker.db.models import Profile
from workbook_tracker.db.store import RecordStore
from workbook_tracker.schemas.workbooks import (
    CandidateResponse,
    DistributeRequest,
    DistributeResponse,
    DistributionStatusResponse,
    TemplateCreatedResponse,
    WorkbookCreate,
    WorkbookResponse,
)
from workbook_tracker.services.directory import OwnerDirectory
from workbook_tracker.services.distribution import DistributionEngine, candidates_by_status
from workbook_tracker.services.workbooks import WorkbookService

router = APIRouter(tags=["Workbooks"])


# -------------------------
# CREATE TEMPLATE (STAFF)
# -------------------------
@router.post("/", response_model=TemplateCreatedResponse)
async def create_template(
    body: WorkbookCreate,
    user: Profile = Depends(require_staff),
    service: WorkbookService = Depends(get_workbook_service),
):
    """
    Create a template workbook together with the author's template sheet
    and its chapters, laid out back-to-back in the given order.
    """
    workbook, sheet, chapters = await service.create_template(user.id, body.title, body.specs())
    return TemplateCreatedResponse(
        workbook=WorkbookResponse(**workbook.model_dump()),
        template_sheet_id=sheet.id,
        chapter_count=len(chapters),
    )


@router.get("/", response_model=list[WorkbookResponse])
async def list_templates(
    user: Profile = Depends(require_staff),
    service: WorkbookService = Depends(get_workbook_service),
):
    """Templates, newest first."""
    return [WorkbookResponse(**w.model_dump()) for w in await service.list_templates()]


@router.get("/{workbook_id}", response_model=WorkbookResponse)
async def get_template(
    workbook_id: str,
    user: Profile = Depends(require_staff),
    service: WorkbookService = Depends(get_workbook_service),
):
    workbook = await service.get_template(workbook_id)
    return WorkbookResponse(**workbook.model_dump())


# -------------------------
# DISTRIBUTION
# -------------------------
@router.get("/{workbook_id}/distribution", response_model=DistributionStatusResponse)
async def get_distribution_status(
    workbook_id: str,
    user: Profile = Depends(require_staff),
    store: RecordStore = Depends(get_store),
    engine: DistributionEngine = Depends(get_distribution_engine),
):
    """
    Active, approved students split into those who already have this
    workbook and those who do not.
    """
    students = await OwnerDirectory(store).list_students()
    ids = [s.id for s in students]
    names = {s.id: s.name for s in students}
    status = await engine.status(workbook_id, ids)

    return DistributionStatusResponse(
        workbook_id=workbook_id,
        already=[
            CandidateResponse(id=i, name=names[i], distributed=True)
            for i in candidates_by_status(status, ids, "already")
        ],
        not_yet=[
            CandidateResponse(id=i, name=names[i], distributed=False)
            for i in candidates_by_status(status, ids, "not_yet")
        ],
    )


@router.post("/{workbook_id}/distribute", response_model=DistributeResponse)
async def distribute(
    workbook_id: str,
    body: DistributeRequest,
    user: Profile = Depends(require_staff),
    engine: DistributionEngine = Depends(get_distribution_engine),
):
    """
    Copy the template sheet and chapters to the selected owners.

    Owners who already have the workbook are skipped unless ``overwrite``
    is set, in which case their chapters are replaced with the template's.
    A partial failure returns 409 with the per-owner report.
    """
    try:
        report = await engine.distribute(workbook_id, body.target_owner_ids, overwrite=body.overwrite)
    except PartialDistributionError as e:
        content = DistributeResponse.from_report(e.report).model_dump()
        content["detail"] = e.detail
        content["error"] = e.code
        return JSONResponse(status_code=e.status_code, content=content)
    return DistributeResponse.from_report(report)
