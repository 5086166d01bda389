"""Issue triage API routes."""

from typing import Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from watchpost.dependencies import RequireAdmin, get_actor, get_current_user, get_db, get_pipeline
from watchpost.models.common import Actor
from watchpost.models.enums import IssueStatus, Severity
from watchpost.models.requests import IgnoreIssueRequest, IgnoreRuleFromIssueRequest, ResolveIssueRequest
from watchpost.notifications.queue import notification_to_dict
from watchpost.services.issue_service import issue_to_dict
from watchpost.services.suppression import rule_to_dict

router = APIRouter(tags=["Issues"])


@router.get("/issues", status_code=200)
async def list_issues(
    status: IssueStatus | None = None,
    severity: Severity | None = None,
    issuer: str | None = None,
    issue_type: str | None = None,
    search: str | None = None,
    include_ignored: bool = False,
    viewed: bool | None = None,
    order_by: str = "last_detected",
    order: Literal["asc", "desc"] = "desc",
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    user: dict = Depends(get_current_user),
) -> dict:
    result = await pipeline.issue_service(db).get_issues(
        status=status,
        severity=severity,
        issuer_name=issuer,
        issue_type=issue_type,
        search=search,
        include_ignored=include_ignored,
        viewed=viewed,
        order_by=order_by,
        order=order,
        page=page,
        per_page=per_page,
    )
    return result.model_dump()


@router.get("/issues/{issue_id}", status_code=200)
async def get_issue(
    issue_id: int,
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    user: dict = Depends(get_current_user),
) -> dict:
    issue = await pipeline.issue_service(db).get_issue(issue_id)
    notifications = await pipeline.notifications(db).list_for_issue(issue_id)
    return {**issue_to_dict(issue), "notifications": [notification_to_dict(n) for n in notifications]}


@router.post("/issues/{issue_id}/viewed", status_code=200, dependencies=[RequireAdmin])
async def mark_viewed(
    issue_id: int,
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    actor: Actor = Depends(get_actor),
) -> dict:
    issue = await pipeline.issue_service(db).mark_viewed(issue_id, actor)
    await db.commit()
    return issue_to_dict(issue)


@router.delete("/issues/{issue_id}/viewed", status_code=200, dependencies=[RequireAdmin])
async def unmark_viewed(
    issue_id: int,
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
) -> dict:
    issue = await pipeline.issue_service(db).unmark_viewed(issue_id)
    await db.commit()
    return issue_to_dict(issue)


@router.post("/issues/{issue_id}/investigate", status_code=200, dependencies=[RequireAdmin])
async def start_investigation(
    issue_id: int,
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    actor: Actor = Depends(get_actor),
) -> dict:
    issue = await pipeline.issue_service(db).start_investigation(issue_id, actor)
    await db.commit()
    return issue_to_dict(issue)


@router.post("/issues/{issue_id}/false-positive", status_code=200, dependencies=[RequireAdmin])
async def mark_false_positive(
    issue_id: int,
    body: ResolveIssueRequest | None = None,
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    actor: Actor = Depends(get_actor),
) -> dict:
    notes = body.notes if body else None
    issue = await pipeline.issue_service(db).mark_false_positive(issue_id, notes, actor)
    await db.commit()
    return issue_to_dict(issue)


@router.post("/issues/{issue_id}/ignore", status_code=200, dependencies=[RequireAdmin])
async def ignore_issue(
    issue_id: int,
    body: IgnoreIssueRequest | None = None,
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    actor: Actor = Depends(get_actor),
) -> dict:
    reason = body.reason if body else None
    issue = await pipeline.issue_service(db).ignore_issue(issue_id, reason, actor)
    await db.commit()
    return issue_to_dict(issue)


@router.post("/issues/{issue_id}/unignore", status_code=200, dependencies=[RequireAdmin])
async def unignore_issue(
    issue_id: int,
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    actor: Actor = Depends(get_actor),
) -> dict:
    issue = await pipeline.issue_service(db).unignore_issue(issue_id, actor)
    await db.commit()
    return issue_to_dict(issue)


@router.post("/issues/{issue_id}/resolve", status_code=200, dependencies=[RequireAdmin])
async def resolve_issue(
    issue_id: int,
    body: ResolveIssueRequest | None = None,
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    actor: Actor = Depends(get_actor),
) -> dict:
    notes = body.notes if body else None
    issue = await pipeline.issue_service(db).resolve_issue(issue_id, notes, actor)
    await db.commit()
    return issue_to_dict(issue)


@router.post("/issues/{issue_id}/ignore-rule", status_code=201, dependencies=[RequireAdmin])
async def create_ignore_rule_from_issue(
    issue_id: int,
    body: IgnoreRuleFromIssueRequest,
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    actor: Actor = Depends(get_actor),
) -> dict:
    rule = await pipeline.issue_service(db).create_ignore_rule_from_issue(
        issue_id,
        body.rule_type,
        pattern=body.pattern,
        description=body.description,
        expires_days=body.expires_days,
        actor=actor,
    )
    await db.commit()
    return rule_to_dict(rule)
