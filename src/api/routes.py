"""/scans endpoint handlers."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sse_starlette.sse import EventSourceResponse

from src.api import service
from src.api.schemas import CreateScanRequest, ResumeScanRequest
from src.scans.lifecycle import ScanLifecycleController

router = APIRouter()


def _get_controller(request: Request) -> ScanLifecycleController:
    return request.app.state.controller


@router.post("/scans", status_code=201)
async def create_scan(
    body: CreateScanRequest,
    controller: ScanLifecycleController = Depends(_get_controller),
):
    scan = await controller.create_scan(body.site_id, body.scan_type, body.single_page)
    return {"scan": await service.get_scan(controller, scan.id)}


@router.get("/scans")
async def list_scans(
    status: str | None = None,
    controller: ScanLifecycleController = Depends(_get_controller),
):
    return {"scans": await service.list_scans(controller, status)}


@router.get("/scans/{scan_id}")
async def get_scan(
    scan_id: int,
    controller: ScanLifecycleController = Depends(_get_controller),
):
    return {"scan": await service.get_scan(controller, scan_id)}


@router.get("/scans/{scan_id}/progress")
async def get_progress(
    scan_id: int,
    controller: ScanLifecycleController = Depends(_get_controller),
):
    return {"progress": await controller.progress.messages(scan_id)}


@router.get("/scans/{scan_id}/progress/stream")
async def stream_progress(
    scan_id: int,
    controller: ScanLifecycleController = Depends(_get_controller),
):
    await service.get_scan(controller, scan_id)
    return EventSourceResponse(service.stream_progress(controller, scan_id))


@router.get("/scans/{scan_id}/pages")
async def get_pages(
    scan_id: int,
    controller: ScanLifecycleController = Depends(_get_controller),
):
    return {"pages": await service.list_pages(controller, scan_id)}


@router.get("/scans/{scan_id}/violations")
async def get_violations(
    scan_id: int,
    controller: ScanLifecycleController = Depends(_get_controller),
):
    return {"violations": await service.list_violations(controller, scan_id)}


@router.post("/scans/{scan_id}/cancel")
async def cancel_scan(
    scan_id: int,
    controller: ScanLifecycleController = Depends(_get_controller),
):
    return await controller.cancel(scan_id)


@router.post("/scans/{scan_id}/resume", status_code=202)
async def resume_scan(
    scan_id: int,
    body: ResumeScanRequest | None = None,
    controller: ScanLifecycleController = Depends(_get_controller),
):
    body = body or ResumeScanRequest()
    scan = await controller.resume_scan(
        scan_id, resume_from_index=body.resume_from_index, restart=body.restart
    )
    return {"scan": await service.get_scan(controller, scan.id)}
