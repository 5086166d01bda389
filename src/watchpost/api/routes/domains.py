"""Redirect domain reputation API routes."""

from typing import Literal

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from watchpost.dependencies import RequireAdmin, get_actor, get_current_user, get_db, get_pipeline
from watchpost.errors.exceptions import NotFoundError
from watchpost.models.common import Actor
from watchpost.models.enums import DomainStatus
from watchpost.models.requests import BulkImportRequest, DomainDecisionRequest, WhitelistDomainRequest
from watchpost.services.domains import pending_to_dict, rejected_to_dict, whitelist_to_dict

router = APIRouter(prefix="/domains", tags=["Domains"])


@router.get("/whitelist", status_code=200)
async def list_whitelist(
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    user: dict = Depends(get_current_user),
) -> list[dict]:
    return [whitelist_to_dict(row) for row in await pipeline.domains(db).list_whitelist()]


@router.post("/whitelist", status_code=201, dependencies=[RequireAdmin])
async def add_to_whitelist(
    body: WhitelistDomainRequest,
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    actor: Actor = Depends(get_actor),
) -> dict:
    row = await pipeline.domains(db).add_to_whitelist(body.domain, body.reason, actor)
    await db.commit()
    return whitelist_to_dict(row)


@router.delete("/whitelist/{domain}", status_code=204, dependencies=[RequireAdmin])
async def remove_from_whitelist(
    domain: str,
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    actor: Actor = Depends(get_actor),
) -> None:
    if not await pipeline.domains(db).remove_from_whitelist(domain, actor):
        raise NotFoundError("WhitelistDomain", domain)
    await db.commit()


@router.post("/whitelist/import", status_code=200, dependencies=[RequireAdmin])
async def bulk_import(
    body: BulkImportRequest,
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    actor: Actor = Depends(get_actor),
) -> dict:
    results = await pipeline.domains(db).bulk_import(body.domains, body.reason, actor)
    await db.commit()
    return results


@router.get("/whitelist/export", status_code=200)
async def export_whitelist(
    format: Literal["csv", "json"] = "csv",
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    user: dict = Depends(get_current_user),
) -> Response:
    body = await pipeline.domains(db).export(format)
    media_type = "text/csv" if format == "csv" else "application/json"
    return Response(content=body, media_type=media_type)


@router.get("/pending", status_code=200)
async def list_pending(
    status: DomainStatus = DomainStatus.PENDING,
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    user: dict = Depends(get_current_user),
) -> list[dict]:
    return [pending_to_dict(row) for row in await pipeline.domains(db).list_pending(status)]


@router.post("/pending/{domain}/approve", status_code=200, dependencies=[RequireAdmin])
async def approve_pending(
    domain: str,
    body: DomainDecisionRequest | None = None,
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    actor: Actor = Depends(get_actor),
) -> dict:
    row = await pipeline.domains(db).approve_pending_domain(domain, body.reason if body else None, actor)
    await db.commit()
    return whitelist_to_dict(row)


@router.post("/pending/{domain}/reject", status_code=200, dependencies=[RequireAdmin])
async def reject_pending(
    domain: str,
    body: DomainDecisionRequest | None = None,
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    actor: Actor = Depends(get_actor),
) -> dict:
    row = await pipeline.domains(db).reject_pending_domain(domain, body.reason if body else None, actor)
    await db.commit()
    return rejected_to_dict(row)


@router.get("/rejected", status_code=200)
async def list_rejected(
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    user: dict = Depends(get_current_user),
) -> list[dict]:
    return [rejected_to_dict(row) for row in await pipeline.domains(db).list_rejected()]


@router.delete("/rejected/{domain}", status_code=204, dependencies=[RequireAdmin])
async def allow_again(
    domain: str,
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    actor: Actor = Depends(get_actor),
) -> None:
    await pipeline.domains(db).remove_from_rejected(domain, actor)
    await db.commit()
