"""
Notification rule routes.
"""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from alertrelay.database import get_db
from alertrelay.dependencies.auth import get_current_user, TokenPayload
from alertrelay.engine import Engine, get_engine
from alertrelay.schemas.rules import (
    RuleCreate,
    RuleEnabledUpdate,
    RuleExecutionResponse,
    RuleResponse,
    RuleTestRequest,
    RuleTestResult,
    RuleUpdate,
)
from alertrelay.services.rule_service import RuleService


router = APIRouter(prefix="/api/notification-rules", tags=["notification-rules"])


def get_rule_service(
    db: AsyncSession = Depends(get_db),
    engine: Engine = Depends(get_engine),
) -> RuleService:
    return RuleService(db, engine.counter, engine.ledger)


@router.get("", response_model=list[RuleResponse])
async def list_rules(
    token: TokenPayload = Depends(get_current_user),
    rules: RuleService = Depends(get_rule_service),
):
    """List the organisation's rules in evaluation order."""
    return await rules.list_rules(token.org_id)


@router.post("", response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(
    request: RuleCreate,
    token: TokenPayload = Depends(get_current_user),
    rules: RuleService = Depends(get_rule_service),
):
    """Create a rule. Unknown channel or endpoint references are rejected with 400."""
    return await rules.create(token.org_id, request)


@router.get("/{rule_id}", response_model=RuleResponse)
async def get_rule(
    rule_id: str,
    token: TokenPayload = Depends(get_current_user),
    rules: RuleService = Depends(get_rule_service),
):
    return await rules.get(token.org_id, rule_id)


@router.patch("/{rule_id}", response_model=RuleResponse)
async def update_rule(
    rule_id: str,
    request: RuleUpdate,
    token: TokenPayload = Depends(get_current_user),
    rules: RuleService = Depends(get_rule_service),
):
    return await rules.update(token.org_id, rule_id, request)


@router.post("/{rule_id}/enabled", response_model=RuleResponse)
async def set_rule_enabled(
    rule_id: str,
    request: RuleEnabledUpdate,
    token: TokenPayload = Depends(get_current_user),
    rules: RuleService = Depends(get_rule_service),
):
    """Enable or disable a rule without a full edit."""
    return await rules.set_enabled(token.org_id, rule_id, request.enabled)


@router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(
    rule_id: str,
    token: TokenPayload = Depends(get_current_user),
    rules: RuleService = Depends(get_rule_service),
):
    await rules.delete(token.org_id, rule_id)


@router.post("/{rule_id}/test", response_model=RuleTestResult)
async def test_rule(
    rule_id: str,
    request: RuleTestRequest | None = None,
    token: TokenPayload = Depends(get_current_user),
    rules: RuleService = Depends(get_rule_service),
    engine: Engine = Depends(get_engine),
):
    """Dry-run the rule against a sample event. Nothing is sent."""
    rule = await rules.get(token.org_id, rule_id)
    return await engine.pipeline.dry_run(rule, request or RuleTestRequest())


@router.get("/{rule_id}/executions", response_model=list[RuleExecutionResponse])
async def list_rule_executions(
    rule_id: str,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    token: TokenPayload = Depends(get_current_user),
    rules: RuleService = Depends(get_rule_service),
):
    return await rules.list_executions(token.org_id, rule_id, limit=limit, offset=offset)
