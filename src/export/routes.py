from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import FileResponse

from src.auth.schemas import TokenUser
from src.auth.utils import get_current_user
from src.export.schemas import ExportDataRequest, ExportDataResponse, ExportProgressResponse
from src.export.service import ExportService

import logging
logger = logging.getLogger(__name__)


export_router = APIRouter()


def get_export_service(request: Request) -> ExportService:
    return request.app.state.export_service


@export_router.post(
    "/export-data",
    response_model=ExportDataResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start an export of the current user's data",
)
async def export_data(
    body: ExportDataRequest,
    current_user: TokenUser = Depends(get_current_user),
    service: ExportService = Depends(get_export_service),
):
    """Returns as soon as the job is recorded; poll `/export-progress` for its state."""
    job = await service.submit(current_user.id, body.uid)
    return ExportDataResponse(export_job_id=job.job_id)


@export_router.get(
    "/export-progress",
    response_model=ExportProgressResponse,
    summary="Get the status and progress of an export job",
)
async def export_progress(
    export_job_id: str = Query(..., alias="exportJobId", min_length=1),
    current_user: TokenUser = Depends(get_current_user),
    service: ExportService = Depends(get_export_service),
):
    return await service.poll(current_user.id, export_job_id)


@export_router.get(
    "/download-exported-data",
    response_class=FileResponse,
    summary="Download the archive of a completed export job",
)
async def download_exported_data(
    export_job_id: str = Query(..., alias="exportJobId", min_length=1),
    current_user: TokenUser = Depends(get_current_user),
    service: ExportService = Depends(get_export_service),
):
    archive = await service.download(current_user.id, export_job_id)
    return FileResponse(
        path=archive,
        media_type="application/zip",
        filename=archive.name,
        headers={
            "Content-Description": "File Transfer",
            "Content-Transfer-Encoding": "binary",
        },
    )
