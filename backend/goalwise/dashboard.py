from __future__ import annotations
"""
Dashboard API router.

Fetch and display:

- total asset value, active goal count and monthly growth
- the five most urgent active goals, in priority order
- recent assets and the portfolio allocation breakdown
"""

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Depends

from .auth import require_caller
from .database import get_db_connection
from .services.dashboard_service import get_dashboard_data, get_portfolio_analysis
from .utils import to_jsonable

if TYPE_CHECKING:
    from psycopg import AsyncConnection
else:
    AsyncConnection = Any

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("")
async def dashboard(
    caller_id: str = Depends(require_caller),
    connection: AsyncConnection = Depends(get_db_connection),
) -> dict[str, Any]:
    """
    Return the headline numbers for the dashboard cards.

    Example response:
    {
      "total_assets_value": "245000.00",
      "active_goals_count": 3,
      "monthly_growth": 1.84,
      "goals": [
        {"id": "...", "name": "Retirement", "priority": "high", "progress": {"percent_complete": 12.5, ...}}
      ],
      "recent_assets": [
        {"id": "...", "name": "Nifty 50 ETF", "type": "etf", "symbol": "NIFTYBEES.NS", ...}
      ]
    }
    """
    return to_jsonable(await get_dashboard_data(connection, caller_id))


@router.get("/portfolio")
async def portfolio(
    caller_id: str = Depends(require_caller),
    connection: AsyncConnection = Depends(get_db_connection),
) -> dict[str, Any]:
    """Return invested amount, current value, gain and allocation by type and risk."""
    return to_jsonable(await get_portfolio_analysis(connection, caller_id))
