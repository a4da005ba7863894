"""HTTP API: health checks, the authorization callback and task queries."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from .errors import AttestationError, AuthorizationError, AuthorizationFailure, InvalidTransitionError, NotFoundError
from .ledger import LedgerAttestor
from .models import HealthStatus, ProcessingTask, ServiceStatus
from .orchestrator import TaskOrchestrator
from .registry import IDENTITY_RE, OwnerRegistry
from .schemas import (
    AuthorizationFailureOut,
    AuthorizationOut,
    AuthorizeBody,
    CancelBody,
    LedgerAccountOut,
    RejectBody,
    TaskListOut,
    VerificationReportOut,
)

if TYPE_CHECKING:
    from .service import DataWalletService

AUTHORIZATION_STATUS: dict[AuthorizationFailure, int] = {
    AuthorizationFailure.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    AuthorizationFailure.EXPIRED: status.HTTP_410_GONE,
    AuthorizationFailure.IDENTITY_MISMATCH: status.HTTP_403_FORBIDDEN,
    AuthorizationFailure.INVALID_SIGNATURE: status.HTTP_401_UNAUTHORIZED,
}


def get_orchestrator(request: Request) -> TaskOrchestrator:
    return request.app.state.service.orchestrator


def get_attestor(request: Request) -> LedgerAttestor:
    return request.app.state.service.attestor


def get_registry(request: Request) -> OwnerRegistry:
    return request.app.state.service.registry


Orchestrator = Annotated[TaskOrchestrator, Depends(get_orchestrator)]

router = APIRouter(prefix="/api/v1", tags=["tasks"])


@router.post("/tasks/{task_id}/authorize", response_model=AuthorizationOut)
async def authorize(task_id: str, body: AuthorizeBody, orchestrator: Orchestrator):
    """Redeem the task's authorization request.  Finalization continues in the background."""
    task = await orchestrator.broker.validate(task_id, body.signature, body.identity)
    return AuthorizationOut(task_id=task.task_id, state=task.state)


@router.post("/tasks/{task_id}/reject", response_model=AuthorizationOut)
async def reject(task_id: str, body: RejectBody, orchestrator: Orchestrator):
    task = await orchestrator.broker.reject(task_id, body.identity, body.reason)
    return AuthorizationOut(task_id=task.task_id, state=task.state)


@router.post("/tasks/{task_id}/cancel", response_model=ProcessingTask)
async def cancel(task_id: str, body: CancelBody, orchestrator: Orchestrator):
    return await orchestrator.cancel(task_id, body.reason)


@router.get("/tasks/{task_id}", response_model=ProcessingTask)
async def get_task(task_id: str, orchestrator: Orchestrator):
    return await orchestrator.store.get(task_id)


@router.get("/tasks/{task_id}/verification", response_model=VerificationReportOut)
async def verify_task(task_id: str, orchestrator: Orchestrator):
    results = await orchestrator.verify_task(task_id)
    return VerificationReportOut(
        task_id=task_id,
        verified=bool(results) and all(r.content_verified and r.wallet_verified is not False for r in results),
        artifacts=results,
    )


@router.get("/owners/{identity}/tasks", response_model=TaskListOut)
async def list_owner_tasks(identity: str, orchestrator: Orchestrator):
    return TaskListOut(identity=identity, tasks=await orchestrator.store.list_for_owner(identity))


@router.get("/owners/{identity}/ledger", response_model=LedgerAccountOut)
async def owner_ledger_account(
    identity: str,
    attestor: Annotated[LedgerAttestor, Depends(get_attestor)],
    registry: Annotated[OwnerRegistry, Depends(get_registry)],
):
    if not IDENTITY_RE.match(identity):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"{identity!r} is not a 0x-prefixed 20-byte address",
        )
    return LedgerAccountOut(
        identity=identity,
        network=attestor.network,
        registered=await attestor.is_registered(identity),
        balance=await attestor.get_balance(identity),
        known_owner=registry.lookup_identity(identity) is not None,
    )


@router.get("/stats")
async def stats(orchestrator: Orchestrator):
    return await orchestrator.statistics()


def create_app(service: DataWalletService) -> FastAPI:
    """Build the FastAPI app serving health checks and the task API for *service*."""
    app = FastAPI(title=f"{service.config.name} API", version="0.1.0")
    app.state.service = service
    app.include_router(router)

    @app.exception_handler(AuthorizationError)
    async def _authorization_error(request: Request, exc: AuthorizationError) -> JSONResponse:
        body = AuthorizationFailureOut(reason=exc.reason.value, detail=str(exc))
        return JSONResponse(content=body.model_dump(), status_code=AUTHORIZATION_STATUS[exc.reason])

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(content={"detail": str(exc)}, status_code=status.HTTP_404_NOT_FOUND)

    @app.exception_handler(InvalidTransitionError)
    async def _conflict(request: Request, exc: InvalidTransitionError) -> JSONResponse:
        return JSONResponse(content={"detail": str(exc)}, status_code=status.HTTP_409_CONFLICT)

    @app.exception_handler(AttestationError)
    async def _ledger_unavailable(request: Request, exc: AttestationError) -> JSONResponse:
        return JSONResponse(content={"detail": str(exc)}, status_code=status.HTTP_502_BAD_GATEWAY)

    @app.get("/health")
    async def health() -> JSONResponse:
        details = await service.health_check()
        body = HealthStatus(
            service_name=service.config.name,
            status=service.status,
            uptime_seconds=time.monotonic() - service.start_time,
            details=details,
        )
        code = 200 if service.status in (ServiceStatus.RUNNING, ServiceStatus.STARTING) else 503
        return JSONResponse(content=body.model_dump(mode="json"), status_code=code)

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = service.status == ServiceStatus.RUNNING
        return JSONResponse(content={"ready": is_ready}, status_code=200 if is_ready else 503)

    return app
