"""Task API routes."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from starlette.datastructures import UploadFile

from branch_deployer.deploy.errors import ValidationError
from branch_deployer.deploy.services import DeployTaskService, UploadedFile

router = APIRouter(prefix="/api")


def get_service(request: Request) -> DeployTaskService:
    return request.app.state.runtime.service


ServiceDep = Annotated[DeployTaskService, Depends(get_service)]


class UpdateTaskRequest(BaseModel):
    status: str | None = None
    score: int | None = None


@router.get("", response_class=PlainTextResponse)
def index() -> str:
    return "branch-deployer"


@router.post("/init", response_class=PlainTextResponse)
def init(service: ServiceDep) -> str:
    """Recreate the schema and the deployment working copy."""
    service.initialize()
    return ""


@router.post("/tasks")
def create_task(service: ServiceDep, branch: str | None = None) -> int:
    return service.create_task(branch).id


@router.get("/tasks")
def list_tasks(service: ServiceDep) -> list[dict[str, Any]]:
    return [task.to_payload() for task in service.list_tasks()]


@router.get("/tasks/running")
def get_running_task(service: ServiceDep) -> dict[str, Any]:
    details = service.get_running_task()
    if details is None:
        raise HTTPException(status_code=404, detail="No running task")
    return details.to_payload()


@router.get("/tasks/{task_id}")
def get_task(task_id: int, service: ServiceDep) -> dict[str, Any]:
    return service.get_task_details(task_id).to_payload()


@router.patch("/tasks/{task_id}")
def update_task(task_id: int, request: UpdateTaskRequest, service: ServiceDep) -> int:
    service.update_task(task_id, status=request.status, score=request.score)
    return task_id


@router.post("/tasks/{task_id}/files")
async def upload_files(task_id: int, request: Request, service: ServiceDep) -> dict[str, list[str]]:
    """Store each multipart file part under its form field name."""
    form = await request.form()
    try:
        files = [
            UploadedFile(name=name, stream=value.file)
            for name, value in form.multi_items()
            if isinstance(value, UploadFile)
        ]
        if not files:
            raise ValidationError("multipart body contains no files")
        stored = await run_in_threadpool(service.upload_files, task_id, files)
    finally:
        await form.close()
    return {"stored": stored}
