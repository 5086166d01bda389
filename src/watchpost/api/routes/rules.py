"""Ignore rule API routes."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from watchpost.dependencies import RequireAdmin, get_actor, get_current_user, get_db, get_pipeline
from watchpost.models.common import Actor
from watchpost.models.enums import RuleType
from watchpost.models.requests import CreateIgnoreRuleRequest
from watchpost.services.suppression import rule_to_dict

router = APIRouter(tags=["Ignore Rules"])


@router.get("/ignore-rules", status_code=200)
async def list_rules(
    rule_type: RuleType | None = None,
    issuer: str | None = None,
    active_only: bool = False,
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    user: dict = Depends(get_current_user),
) -> list[dict]:
    rules = await pipeline.suppression(db).list_rules(rule_type=rule_type, issuer_name=issuer, active_only=active_only)
    return [rule_to_dict(rule) for rule in rules]


@router.post("/ignore-rules", status_code=201, dependencies=[RequireAdmin])
async def create_rule(
    body: CreateIgnoreRuleRequest,
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    actor: Actor = Depends(get_actor),
) -> dict:
    rule = await pipeline.suppression(db).add_rule(
        body.rule_type,
        body.rule_value,
        rule_name=body.rule_name,
        issuer_name=body.issuer_name,
        issue_type=body.issue_type,
        description=body.description,
        expires_at=body.expires_at,
        actor=actor,
    )
    await db.commit()
    return rule_to_dict(rule)


@router.post("/ignore-rules/{rule_id}/deactivate", status_code=200, dependencies=[RequireAdmin])
async def deactivate_rule(
    rule_id: int,
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    actor: Actor = Depends(get_actor),
) -> dict:
    rule = await pipeline.suppression(db).deactivate_rule(rule_id, actor)
    await db.commit()
    return rule_to_dict(rule)


@router.delete("/ignore-rules/{rule_id}", status_code=204, dependencies=[RequireAdmin])
async def delete_rule(
    rule_id: int,
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    actor: Actor = Depends(get_actor),
) -> None:
    await pipeline.suppression(db).delete_rule(rule_id, actor)
    await db.commit()
