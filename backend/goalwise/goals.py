"""Goals router: owner-scoped CRUD, onboarding plans and progress reads."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Literal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator

from .auth import require_caller
from .config import settings
from .database import get_db_connection
from .services.dashboard_service import invalidate_dashboard_views
from .services.goal_planning import (
    GoalDetails,
    GoalKeyword,
    GoalPlanInput,
    GoalPriority,
    normalize_keyword_value,
    normalize_priority_value,
    plan_goal,
)
from .services.goals_service import (
    complete_goal,
    create_goal,
    delete_goal,
    get_goal,
    list_goals,
    update_goal,
)
from .services.suggestions_service import create_goal_with_portfolio
from .utils import to_jsonable

if TYPE_CHECKING:
    from psycopg import AsyncConnection
else:
    AsyncConnection = Any

GoalStatusFilter = Literal["active", "completed", "all"]

router = APIRouter(prefix="/goals", tags=["goals"])


def _today() -> date:
    return date.today()


def _inflation_rate() -> Decimal:
    return Decimal(str(settings.inflation_rate))


def _detail_patch(details: GoalDetails | None) -> dict[str, Any]:
    if details is None:
        return {}
    return {
        key: (str(value) if isinstance(value, Decimal) else value)
        for key, value in details.model_dump(exclude_unset=True).items()
    }


class GoalCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=1000)
    keywords: list[GoalKeyword] = Field(min_length=1)
    target_amt: Decimal = Field(gt=Decimal("0"), max_digits=14, decimal_places=2)
    current_amt: Decimal = Field(default=Decimal("0.00"), ge=Decimal("0"), max_digits=14, decimal_places=2)
    target_date: date
    priority: GoalPriority = "medium"
    details: GoalDetails | None = None

    @field_validator("priority", mode="before")
    @classmethod
    def _normalize_priority(cls, value: Any) -> Any:
        return normalize_priority_value(value)

    @field_validator("keywords", mode="before")
    @classmethod
    def _normalize_keywords(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [normalize_keyword_value(item) for item in value]
        return value


class GoalUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=1000)
    keywords: list[GoalKeyword] | None = Field(default=None, min_length=1)
    target_amt: Decimal | None = Field(default=None, gt=Decimal("0"), max_digits=14, decimal_places=2)
    current_amt: Decimal | None = Field(default=None, ge=Decimal("0"), max_digits=14, decimal_places=2)
    target_date: date | None = None
    priority: GoalPriority | None = None
    details: GoalDetails | None = None

    @field_validator("priority", mode="before")
    @classmethod
    def _normalize_priority(cls, value: Any) -> Any:
        return normalize_priority_value(value)

    @field_validator("keywords", mode="before")
    @classmethod
    def _normalize_keywords(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [normalize_keyword_value(item) for item in value]
        return value


class OnboardingRequest(GoalPlanInput):
    risk_level: Literal["high", "medium", "low"] | None = None

    @field_validator("risk_level", mode="before")
    @classmethod
    def _normalize_risk_level(cls, value: Any) -> Any:
        return normalize_priority_value(value)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_goal_endpoint(
    payload: GoalCreateRequest,
    caller_id: str = Depends(require_caller),
    connection: AsyncConnection = Depends(get_db_connection),
) -> dict[str, Any]:
    """Create one goal from explicit amounts and date."""
    data = payload.model_dump(exclude={"details"})
    data["details"] = _detail_patch(payload.details)
    goal = await create_goal(connection, caller_id, data, _inflation_rate())
    invalidate_dashboard_views(caller_id)
    return to_jsonable(goal)


@router.post("/onboarding", status_code=status.HTTP_201_CREATED)
async def onboarding_endpoint(
    payload: OnboardingRequest,
    caller_id: str = Depends(require_caller),
    connection: AsyncConnection = Depends(get_db_connection),
) -> dict[str, Any]:
    """
    Create a goal from onboarding answers (today's cost, horizon, category fields).

    With `risk_level`, the upfront amount is also invested in the suggested
    portfolio and the response reports created and failed assets.
    """
    if payload.risk_level is not None:
        result = await create_goal_with_portfolio(
            connection,
            caller_id,
            payload,
            payload.risk_level,
            inflation_rate=_inflation_rate(),
            currency=settings.default_currency,
        )
    else:
        planned = plan_goal(payload, _today(), _inflation_rate())
        result = {"goal": await create_goal(connection, caller_id, planned, _inflation_rate())}

    invalidate_dashboard_views(caller_id)
    return to_jsonable(result)


@router.get("")
async def list_goals_endpoint(
    status: GoalStatusFilter = Query(default="active"),
    limit: int | None = Query(default=None, ge=1, le=200),
    caller_id: str = Depends(require_caller),
    connection: AsyncConnection = Depends(get_db_connection),
) -> list[dict[str, Any]]:
    return to_jsonable(await list_goals(connection, caller_id, status=status, limit=limit))


@router.get("/{goal_id}")
async def get_goal_endpoint(
    goal_id: UUID,
    caller_id: str = Depends(require_caller),
    connection: AsyncConnection = Depends(get_db_connection),
) -> dict[str, Any]:
    return to_jsonable(await get_goal(connection, caller_id, goal_id))


@router.get("/{goal_id}/progress")
async def goal_progress_endpoint(
    goal_id: UUID,
    caller_id: str = Depends(require_caller),
    connection: AsyncConnection = Depends(get_db_connection),
) -> dict[str, Any]:
    goal = await get_goal(connection, caller_id, goal_id)
    return to_jsonable({"goal_id": goal["id"], "status": goal["status"], **goal["progress"]})


@router.patch("/{goal_id}")
async def update_goal_endpoint(
    goal_id: UUID,
    payload: GoalUpdateRequest,
    caller_id: str = Depends(require_caller),
    connection: AsyncConnection = Depends(get_db_connection),
) -> dict[str, Any]:
    """Partially update one goal; detail keys sent as null are removed."""
    patch_data = payload.model_dump(exclude_unset=True, exclude={"details"})
    if payload.details is not None:
        patch_data["details"] = _detail_patch(payload.details)
    if not patch_data:
        raise HTTPException(status_code=422, detail="At least one field must be provided")

    goal = await update_goal(connection, caller_id, goal_id, patch_data, _inflation_rate())
    invalidate_dashboard_views(caller_id)
    return to_jsonable(goal)


@router.post("/{goal_id}/complete")
async def complete_goal_endpoint(
    goal_id: UUID,
    caller_id: str = Depends(require_caller),
    connection: AsyncConnection = Depends(get_db_connection),
) -> dict[str, Any]:
    goal = await complete_goal(connection, caller_id, goal_id)
    invalidate_dashboard_views(caller_id)
    return to_jsonable(goal)


@router.delete("/{goal_id}")
async def delete_goal_endpoint(
    goal_id: UUID,
    caller_id: str = Depends(require_caller),
    connection: AsyncConnection = Depends(get_db_connection),
) -> dict[str, Any]:
    """Delete one goal and the caller's assets linked to it."""
    deleted = await delete_goal(connection, caller_id, goal_id)
    invalidate_dashboard_views(caller_id)
    return to_jsonable(deleted)
