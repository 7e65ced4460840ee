"""Assets router: owner-scoped CRUD, market revaluation and performance history."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator

from .auth import require_caller
from .config import settings
from .database import get_db_connection
from .services.assets_service import (
    AssetType,
    RiskLevel,
    create_asset,
    delete_asset,
    get_asset,
    list_assets,
    list_performance,
    normalize_asset_type,
    normalize_risk,
    refresh_asset_valuation,
    update_asset,
)
from .services.dashboard_service import invalidate_dashboard_views
from .utils import to_jsonable

if TYPE_CHECKING:
    from psycopg import AsyncConnection
else:
    AsyncConnection = Any

router = APIRouter(prefix="/assets", tags=["assets"])


class AssetDetails(BaseModel):
    institution: str | None = Field(default=None, max_length=120)
    interest_rate: Decimal | None = Field(default=None, ge=Decimal("0"), le=Decimal("100"))
    tenure_months: int | None = Field(default=None, ge=1, le=600)
    maturity_date: date | None = None
    exchange: str | None = Field(default=None, max_length=40)
    fund_house: str | None = Field(default=None, max_length=120)
    expense_ratio: Decimal | None = Field(default=None, ge=Decimal("0"), le=Decimal("10"))

    def as_patch(self) -> dict[str, Any]:
        """Only explicitly sent keys; explicit nulls survive so they can clear a field."""
        return self.model_dump(mode="json", exclude_unset=True)


class AssetCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    type: AssetType
    symbol: str | None = Field(default=None, max_length=32)
    quantity: Decimal = Field(gt=Decimal("0"))
    purchase_price: Decimal = Field(gt=Decimal("0"), max_digits=14, decimal_places=2)
    purchase_date: date
    currency: str = Field(default_factory=lambda: settings.default_currency, min_length=3, max_length=3)
    risk: RiskLevel = "moderate"
    goal_id: UUID | None = None
    details: AssetDetails | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        return normalize_asset_type(value)

    @field_validator("risk", mode="before")
    @classmethod
    def _normalize_risk(cls, value: Any) -> Any:
        return normalize_risk(value)


class AssetUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    type: AssetType | None = None
    symbol: str | None = Field(default=None, max_length=32)
    quantity: Decimal | None = Field(default=None, gt=Decimal("0"))
    purchase_price: Decimal | None = Field(default=None, gt=Decimal("0"), max_digits=14, decimal_places=2)
    purchase_date: date | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    risk: RiskLevel | None = None
    goal_id: UUID | None = None
    details: AssetDetails | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        return normalize_asset_type(value)

    @field_validator("risk", mode="before")
    @classmethod
    def _normalize_risk(cls, value: Any) -> Any:
        return normalize_risk(value)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_asset_endpoint(
    payload: AssetCreateRequest,
    caller_id: str = Depends(require_caller),
    connection: AsyncConnection = Depends(get_db_connection),
) -> dict[str, Any]:
    """Create one asset; `goal_id` must reference one of the caller's goals."""
    data = payload.model_dump(exclude={"details"})
    data["details"] = payload.details.as_patch() if payload.details else {}
    asset = await create_asset(connection, caller_id, data)
    invalidate_dashboard_views(caller_id)
    return to_jsonable(asset)


@router.get("")
async def list_assets_endpoint(
    goal_id: UUID | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=500),
    caller_id: str = Depends(require_caller),
    connection: AsyncConnection = Depends(get_db_connection),
) -> list[dict[str, Any]]:
    return to_jsonable(await list_assets(connection, caller_id, goal_id=goal_id, limit=limit))


@router.get("/{asset_id}")
async def get_asset_endpoint(
    asset_id: UUID,
    caller_id: str = Depends(require_caller),
    connection: AsyncConnection = Depends(get_db_connection),
) -> dict[str, Any]:
    return to_jsonable(await get_asset(connection, caller_id, asset_id))


@router.patch("/{asset_id}")
async def update_asset_endpoint(
    asset_id: UUID,
    payload: AssetUpdateRequest,
    caller_id: str = Depends(require_caller),
    connection: AsyncConnection = Depends(get_db_connection),
) -> dict[str, Any]:
    """Partially update one asset; `goal_id: null` unlinks it from its goal."""
    patch_data = payload.model_dump(exclude_unset=True, exclude={"details"})
    if payload.details is not None:
        patch_data["details"] = payload.details.as_patch()
    if not patch_data:
        raise HTTPException(status_code=422, detail="At least one field must be provided")

    asset = await update_asset(connection, caller_id, asset_id, patch_data)
    invalidate_dashboard_views(caller_id)
    return to_jsonable(asset)


@router.delete("/{asset_id}")
async def delete_asset_endpoint(
    asset_id: UUID,
    caller_id: str = Depends(require_caller),
    connection: AsyncConnection = Depends(get_db_connection),
) -> dict[str, Any]:
    deleted = await delete_asset(connection, caller_id, asset_id)
    invalidate_dashboard_views(caller_id)
    return to_jsonable(deleted)


@router.post("/{asset_id}/refresh")
async def refresh_asset_endpoint(
    asset_id: UUID,
    caller_id: str = Depends(require_caller),
    connection: AsyncConnection = Depends(get_db_connection),
) -> dict[str, Any]:
    """Reprice one asset from market data and record performance snapshots."""
    result = await refresh_asset_valuation(connection, caller_id, asset_id)
    invalidate_dashboard_views(caller_id)
    return to_jsonable(result)


@router.get("/{asset_id}/performance")
async def asset_performance_endpoint(
    asset_id: UUID,
    period: str | None = Query(default=None, max_length=40),
    caller_id: str = Depends(require_caller),
    connection: AsyncConnection = Depends(get_db_connection),
) -> list[dict[str, Any]]:
    return to_jsonable(await list_performance(connection, caller_id, asset_id, period=period))
