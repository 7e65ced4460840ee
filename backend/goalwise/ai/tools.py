"""Tool registry: argument models, function declarations and the safe executor for `/ai/chat`."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from goalwise.config import settings
from goalwise.errors import AmbiguousMatchError, FinanceError
from goalwise.services.assets_service import (
    AssetType,
    RiskLevel,
    create_asset,
    delete_asset,
    get_asset,
    list_performance,
    normalize_asset_type,
    normalize_risk,
    refresh_asset_valuation,
    resolve_asset_by_name,
    search_assets,
    update_asset,
)
from goalwise.services.dashboard_service import (
    get_dashboard_data,
    get_portfolio_analysis,
    invalidate_dashboard_views,
)
from goalwise.services.financial_math import asset_growth
from goalwise.services.goal_planning import (
    GOAL_KEYWORDS,
    GoalKeyword,
    GoalPlanInput,
    GoalPriority,
    normalize_keyword_value,
    normalize_priority_value,
    plan_goal,
)
from goalwise.services.goals_service import (
    complete_goal,
    create_goal,
    delete_goal,
    get_goal,
    resolve_goal_by_name,
    search_goals,
    update_goal,
)
from goalwise.services.market_data import get_market_data_gateway
from goalwise.services.suggestions_service import (
    create_goal_with_portfolio,
    expected_portfolio_return,
    suggest_investments,
)
from goalwise.utils import to_jsonable

logger = logging.getLogger(__name__)

ToolKind = Literal["read", "write"]
ToolHandler = Callable[[Any, str, Any], Awaitable[dict[str, Any]]]
SuggestionRisk = Literal["high", "medium", "low"]


def _today() -> date:
    return date.today()


def _inflation_rate() -> Decimal:
    return Decimal(str(settings.inflation_rate))


def _normalize_suggestion_risk(value: Any) -> Any:
    value = normalize_priority_value(value)
    return "medium" if value == "moderate" else value


class NoArgs(BaseModel):
    pass


class SearchArgs(BaseModel):
    query: str = Field(min_length=1, max_length=120)


class GoalIdArgs(BaseModel):
    goal_id: UUID


class AssetIdArgs(BaseModel):
    asset_id: UUID


class CreateGoalArgs(GoalPlanInput):
    risk_level: SuggestionRisk | None = None

    @field_validator("risk_level", mode="before")
    @classmethod
    def _normalize_risk_level(cls, value: Any) -> Any:
        return _normalize_suggestion_risk(value)


class GoalUpdates(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=1000)
    keywords: list[GoalKeyword] | None = None
    cost: Decimal | None = Field(default=None, gt=Decimal("0"))
    years: int | None = Field(default=None, ge=1, le=50)
    target_date: date | None = None
    upfront_amount: Decimal | None = Field(default=None, ge=Decimal("0"))
    current_amt: Decimal | None = Field(default=None, ge=Decimal("0"))
    priority: GoalPriority | None = None

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

    @model_validator(mode="after")
    def _check_fields(self) -> "GoalUpdates":
        if not self.model_fields_set:
            raise ValueError("updates must include at least one field")
        if self.years is not None and self.target_date is not None:
            raise ValueError("Provide years or target_date, not both")
        return self

    def to_patch(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "keywords": self.keywords,
            "target_amt": self.cost,
            "years": self.years,
            "target_date": self.target_date,
            "current_amt": self.current_amt if self.current_amt is not None else self.upfront_amount,
            "priority": self.priority,
        }


class UpdateGoalByNameArgs(BaseModel):
    name_or_keyword: str = Field(min_length=1, max_length=120)
    updates: GoalUpdates


class DeleteGoalByNameArgs(BaseModel):
    name_or_keyword: str = Field(min_length=1, max_length=120)


class CreateAssetArgs(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    type: AssetType
    symbol: str | None = Field(default=None, max_length=32)
    quantity: Decimal = Field(gt=Decimal("0"))
    purchase_price: Decimal = Field(gt=Decimal("0"))
    purchase_date: date
    risk: RiskLevel = "moderate"
    currency: str = Field(default_factory=lambda: settings.default_currency, min_length=3, max_length=3)
    goal_id: UUID | None = None
    goal_name: str | None = Field(default=None, max_length=120)
    institution: str | None = Field(default=None, max_length=120)
    interest_rate: Decimal | None = Field(default=None, ge=Decimal("0"), le=Decimal("100"))
    tenure_months: int | None = Field(default=None, ge=1, le=600)

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        return normalize_asset_type(value)

    @field_validator("risk", mode="before")
    @classmethod
    def _normalize_risk(cls, value: Any) -> Any:
        return normalize_risk(value)


class AssetUpdates(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    type: AssetType | None = None
    symbol: str | None = Field(default=None, max_length=32)
    quantity: Decimal | None = Field(default=None, gt=Decimal("0"))
    purchase_price: Decimal | None = Field(default=None, gt=Decimal("0"))
    purchase_date: date | None = None
    risk: RiskLevel | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    goal_id: UUID | None = None
    institution: str | None = Field(default=None, max_length=120)
    interest_rate: Decimal | None = Field(default=None, ge=Decimal("0"), le=Decimal("100"))
    tenure_months: int | None = Field(default=None, ge=1, le=600)

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        return normalize_asset_type(value)

    @field_validator("risk", mode="before")
    @classmethod
    def _normalize_risk(cls, value: Any) -> Any:
        return normalize_risk(value)

    @model_validator(mode="after")
    def _check_fields(self) -> "AssetUpdates":
        if not self.model_fields_set:
            raise ValueError("updates must include at least one field")
        return self


class UpdateAssetArgs(BaseModel):
    name_or_symbol: str = Field(min_length=1, max_length=120)
    updates: AssetUpdates


class DeleteAssetArgs(BaseModel):
    name_or_symbol: str = Field(min_length=1, max_length=120)
    confirm_deletion: bool = False


class InvestmentSuggestionsArgs(BaseModel):
    goal_id: UUID
    risk_level: SuggestionRisk
    target_amount: Decimal | None = Field(default=None, gt=Decimal("0"))

    @field_validator("risk_level", mode="before")
    @classmethod
    def _normalize_risk_level(cls, value: Any) -> Any:
        return _normalize_suggestion_risk(value)


def _asset_details(args: CreateAssetArgs | AssetUpdates) -> dict[str, Any]:
    details = {
        "institution": args.institution,
        "interest_rate": str(args.interest_rate) if args.interest_rate is not None else None,
        "tenure_months": args.tenure_months,
    }
    return {key: value for key, value in details.items() if value is not None}


async def _get_dashboard_stats(connection: Any, caller_id: str, args: NoArgs) -> dict[str, Any]:
    return {"data": await get_dashboard_data(connection, caller_id)}


async def _get_portfolio_stats(connection: Any, caller_id: str, args: NoArgs) -> dict[str, Any]:
    return await get_portfolio_analysis(connection, caller_id)


async def _create_goal(connection: Any, caller_id: str, args: CreateGoalArgs) -> dict[str, Any]:
    if args.risk_level is not None:
        return await create_goal_with_portfolio(
            connection,
            caller_id,
            args,
            args.risk_level,
            inflation_rate=_inflation_rate(),
            currency=settings.default_currency,
        )

    planned = plan_goal(args, _today(), _inflation_rate())
    return {"goal": await create_goal(connection, caller_id, planned, _inflation_rate())}


async def _search_goals_by_name(connection: Any, caller_id: str, args: SearchArgs) -> dict[str, Any]:
    goals = await search_goals(connection, caller_id, args.query)
    return {"goals": goals, "count": len(goals)}


async def _update_goal_by_name(connection: Any, caller_id: str, args: UpdateGoalByNameArgs) -> dict[str, Any]:
    goal = await resolve_goal_by_name(connection, caller_id, args.name_or_keyword)
    updated = await update_goal(connection, caller_id, goal["id"], args.updates.to_patch(), _inflation_rate())
    return {"goal": updated}


async def _delete_goal_by_name(connection: Any, caller_id: str, args: DeleteGoalByNameArgs) -> dict[str, Any]:
    goal = await resolve_goal_by_name(connection, caller_id, args.name_or_keyword)
    deleted = await delete_goal(connection, caller_id, goal["id"])
    return {
        "message": f'Goal "{deleted["name"]}" deleted successfully',
        "deleted_assets": deleted["deleted_assets"],
    }


async def _create_asset(connection: Any, caller_id: str, args: CreateAssetArgs) -> dict[str, Any]:
    goal_id = args.goal_id
    if goal_id is None and args.goal_name:
        goal_id = (await resolve_goal_by_name(connection, caller_id, args.goal_name))["id"]

    asset = await create_asset(
        connection,
        caller_id,
        {
            **args.model_dump(include={"name", "type", "symbol", "quantity", "purchase_price", "purchase_date", "risk", "currency"}),
            "goal_id": goal_id,
            "details": _asset_details(args),
        },
    )
    return {"asset": asset}


async def _search_assets_by_name(connection: Any, caller_id: str, args: SearchArgs) -> dict[str, Any]:
    assets = await search_assets(connection, caller_id, args.query)
    return {"assets": assets, "count": len(assets)}


async def _update_asset(connection: Any, caller_id: str, args: UpdateAssetArgs) -> dict[str, Any]:
    asset = await resolve_asset_by_name(connection, caller_id, args.name_or_symbol)
    updates = args.updates
    patch = updates.model_dump(
        include={"name", "type", "symbol", "quantity", "purchase_price", "purchase_date", "risk", "currency", "goal_id"},
        exclude_none=True,
    )
    patch["details"] = _asset_details(updates)
    updated = await update_asset(connection, caller_id, asset["id"], patch)
    return {"message": f'Asset "{updated["name"]}" updated successfully', "asset": updated}


async def _delete_asset(connection: Any, caller_id: str, args: DeleteAssetArgs) -> dict[str, Any]:
    asset = await resolve_asset_by_name(connection, caller_id, args.name_or_symbol)
    if not args.confirm_deletion:
        return {
            "success": False,
            "error": "Please confirm deletion",
            "details": {
                "name": asset["name"],
                "symbol": asset["symbol"],
                "type": asset["type"],
                "quantity": asset["quantity"],
                "purchase_price": asset["purchase_price"],
                "current_value": asset.get("current_value"),
            },
        }

    deleted = await delete_asset(connection, caller_id, asset["id"])
    return {"message": f'Asset "{deleted["name"]}" deleted successfully'}


async def _compute_goal_progress(connection: Any, caller_id: str, args: GoalIdArgs) -> dict[str, Any]:
    goal = await get_goal(connection, caller_id, args.goal_id)
    return {
        "goal_id": goal["id"],
        "name": goal["name"],
        "status": goal["status"],
        "current_amt": goal["current_amt"],
        "target_amt": goal["target_amt"],
        "target_amt_inflation_adjusted": goal["target_amt_inflation_adjusted"],
        "target_date": goal["target_date"],
        **goal["progress"],
    }


async def _complete_goal(connection: Any, caller_id: str, args: GoalIdArgs) -> dict[str, Any]:
    return {"goal": await complete_goal(connection, caller_id, args.goal_id)}


async def _get_asset_performance(connection: Any, caller_id: str, args: AssetIdArgs) -> dict[str, Any]:
    asset = await get_asset(connection, caller_id, args.asset_id)
    snapshots = await list_performance(connection, caller_id, args.asset_id)

    growth = None
    if asset.get("symbol") and asset["type"] != "fd":
        result = await asset_growth(
            asset["symbol"],
            asset["purchase_date"],
            Decimal(str(asset["quantity"])),
            get_market_data_gateway().fetch_bars,
        )
        growth = result.as_dict()
    return {"asset": asset, "snapshots": snapshots, "growth": growth}


async def _refresh_asset_valuation(connection: Any, caller_id: str, args: AssetIdArgs) -> dict[str, Any]:
    return await refresh_asset_valuation(connection, caller_id, args.asset_id)


async def _get_investment_suggestions(connection: Any, caller_id: str, args: InvestmentSuggestionsArgs) -> dict[str, Any]:
    goal = await get_goal(connection, caller_id, args.goal_id)
    amount = args.target_amount
    if amount is None:
        remaining = goal["progress"]["remaining_amount"]
        amount = remaining if remaining > 0 else goal["target_amt"]

    suggestions = suggest_investments(args.risk_level, amount, settings.default_currency)
    return {
        "goal_id": goal["id"],
        "risk_level": args.risk_level,
        "amount": amount,
        "suggestions": suggestions,
        "expected_return": expected_portfolio_return(suggestions),
    }


def _string(description: str, enum: list[str] | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "STRING", "description": description}
    if enum:
        schema["enum"] = enum
    return schema


def _number(description: str) -> dict[str, Any]:
    return {"type": "NUMBER", "description": description}


def _integer(description: str) -> dict[str, Any]:
    return {"type": "INTEGER", "description": description}


def _boolean(description: str) -> dict[str, Any]:
    return {"type": "BOOLEAN", "description": description}


def _object(properties: dict[str, Any], required: list[str] | None = None, description: str | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "OBJECT", "properties": properties}
    if required:
        schema["required"] = required
    if description:
        schema["description"] = description
    return schema


_GOAL_KEYWORDS = list(GOAL_KEYWORDS)
_PRIORITIES = ["high", "medium", "low"]
_SUGGESTION_RISKS = ["High", "Medium", "Low"]
_ASSET_TYPES = ["stock", "mf", "etf", "fd"]
_ASSET_RISKS = ["high", "moderate", "low"]

_ASSET_FIELDS: dict[str, Any] = {
    "name": _string("Asset name"),
    "type": _string("Asset type: stock, mutual fund (mf), ETF or fixed deposit (fd)", _ASSET_TYPES),
    "symbol": _string("Ticker symbol for stocks, mutual funds and ETFs, e.g. INFY.NS"),
    "quantity": _number("Number of units held"),
    "purchase_price": _number("Purchase price per unit"),
    "purchase_date": _string("Purchase date in YYYY-MM-DD"),
    "risk": _string("Risk level of the asset", _ASSET_RISKS),
    "currency": _string("Three-letter currency code"),
    "institution": _string("Bank or broker"),
    "interest_rate": _number("Annual interest rate in percent (fixed deposits)"),
    "tenure_months": _integer("Tenure in months (fixed deposits)"),
}


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    args_model: type[BaseModel]
    parameters: dict[str, Any]
    kind: ToolKind
    handler: ToolHandler
    # tool that must have run earlier in the same request
    requires_prior: str | None = None

    def declaration(self) -> dict[str, Any]:
        declaration: dict[str, Any] = {"name": self.name, "description": self.description}
        if self.parameters.get("properties"):
            declaration["parameters"] = self.parameters
        return declaration


TOOLS: dict[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec(
            name="get_dashboard_stats",
            description="Get the user's dashboard: total assets value, active goals count, monthly growth, most urgent goals and recent assets.",
            args_model=NoArgs,
            parameters=_object({}),
            kind="read",
            handler=_get_dashboard_stats,
        ),
        ToolSpec(
            name="get_portfolio_stats",
            description="Get portfolio analysis: invested amount, current value, gain and allocation by asset type and risk level.",
            args_model=NoArgs,
            parameters=_object({}),
            kind="read",
            handler=_get_portfolio_stats,
        ),
        ToolSpec(
            name="create_goal",
            description=(
                "Create a new financial goal. Retirement goals need monthly_expenses, current_age and retirement_age; "
                "emergency funds may give monthly_income and desired_coverage_months instead of cost. "
                "Pass risk_level to also invest the upfront amount in a suggested portfolio."
            ),
            args_model=CreateGoalArgs,
            parameters=_object(
                {
                    "name": _string("Goal name"),
                    "description": _string("Goal description"),
                    "keywords": {
                        "type": "ARRAY",
                        "items": _string("Goal category", _GOAL_KEYWORDS),
                        "description": "Goal categories; the first one is the main goal type",
                    },
                    "cost": _number("Today's cost of the goal"),
                    "years": _integer("Years until the goal (1-50)"),
                    "upfront_amount": _number("Amount already saved or invested now"),
                    "priority": _string("Goal priority", _PRIORITIES),
                    "risk_level": _string("Risk appetite for suggested investments", _SUGGESTION_RISKS),
                    "monthly_expenses": _number("Current monthly expenses (retirement)"),
                    "current_age": _integer("Current age (retirement)"),
                    "retirement_age": _integer("Planned retirement age (retirement)"),
                    "life_expectancy": _integer("Life expectancy, default 85 (retirement)"),
                    "taking_loan": _boolean("Whether a home loan is planned (home)"),
                    "down_payment_percentage": _number("Down payment percentage (home)"),
                    "guest_count": _integer("Number of guests (wedding)"),
                    "include_honeymoon": _boolean("Include honeymoon (wedding)"),
                    "monthly_income": _number("Monthly income (emergency fund)"),
                    "desired_coverage_months": _integer("Months of income to cover, 3-24 (emergency fund)"),
                    "debt_type": _string("Debt type (debt repayment)", ["credit_card", "personal_loan", "student_loan", "other"]),
                    "interest_rate": _number("Interest rate in percent (debt repayment)"),
                    "minimum_payment": _number("Minimum monthly payment (debt repayment)"),
                    "business_type": _string("Kind of business (business)"),
                    "employee_count": _integer("Planned employees (business)"),
                    "family_size": _integer("Family members covered (health)"),
                    "insurance_coverage": _number("Existing insurance cover (health)"),
                    "donation_type": _string("Donation type (charity)", ["one_time", "recurring"]),
                    "recurring_amount": _number("Recurring donation amount (charity)"),
                },
                ["keywords"],
            ),
            kind="write",
            handler=_create_goal,
        ),
        ToolSpec(
            name="search_goals_by_name",
            description="Search the user's goals by name or category keyword. Use this instead of asking for goal ids.",
            args_model=SearchArgs,
            parameters=_object({"query": _string("Goal name or keyword, e.g. 'wedding'")}, ["query"]),
            kind="read",
            handler=_search_goals_by_name,
        ),
        ToolSpec(
            name="update_goal_by_name",
            description="Update one goal found by name or keyword. Fails with the candidate list if several goals match.",
            args_model=UpdateGoalByNameArgs,
            parameters=_object(
                {
                    "name_or_keyword": _string("Current goal name or keyword"),
                    "updates": _object(
                        {
                            "name": _string("New goal name"),
                            "description": _string("New description"),
                            "cost": _number("New target amount"),
                            "years": _integer("New number of years from today"),
                            "target_date": _string("New target date in YYYY-MM-DD"),
                            "upfront_amount": _number("New saved amount"),
                            "current_amt": _number("New saved amount"),
                            "priority": _string("New priority", _PRIORITIES),
                        },
                        description="Fields to update",
                    ),
                },
                ["name_or_keyword", "updates"],
            ),
            kind="write",
            handler=_update_goal_by_name,
        ),
        ToolSpec(
            name="delete_goal_by_name",
            description="Delete one goal found by name or keyword, together with its linked assets. Run search_goals_by_name first.",
            args_model=DeleteGoalByNameArgs,
            parameters=_object({"name_or_keyword": _string("Goal name or keyword to delete")}, ["name_or_keyword"]),
            kind="write",
            handler=_delete_goal_by_name,
            requires_prior="search_goals_by_name",
        ),
        ToolSpec(
            name="create_asset",
            description="Create a new investment asset, optionally linked to a goal by id or name.",
            args_model=CreateAssetArgs,
            parameters=_object(
                {
                    **_ASSET_FIELDS,
                    "goal_id": _string("Linked goal id, if known"),
                    "goal_name": _string("Linked goal name or keyword, when the id is not known"),
                },
                ["name", "type", "quantity", "purchase_price", "purchase_date"],
            ),
            kind="write",
            handler=_create_asset,
        ),
        ToolSpec(
            name="search_assets_by_name",
            description="Search the user's assets by name or symbol. Use this instead of asking for asset ids.",
            args_model=SearchArgs,
            parameters=_object({"query": _string("Asset name or symbol, e.g. 'Tesla' or 'TSLA'")}, ["query"]),
            kind="read",
            handler=_search_assets_by_name,
        ),
        ToolSpec(
            name="update_asset",
            description="Update one asset found by name or symbol. Fails with the candidate list if several assets match.",
            args_model=UpdateAssetArgs,
            parameters=_object(
                {
                    "name_or_symbol": _string("Current asset name or symbol"),
                    "updates": _object(
                        {**_ASSET_FIELDS, "goal_id": _string("New linked goal id")},
                        description="Fields to update",
                    ),
                },
                ["name_or_symbol", "updates"],
            ),
            kind="write",
            handler=_update_asset,
        ),
        ToolSpec(
            name="delete_asset",
            description=(
                "Delete one asset found by name or symbol. Run search_assets_by_name first; without "
                "confirm_deletion=true the asset details are returned for confirmation and nothing is deleted."
            ),
            args_model=DeleteAssetArgs,
            parameters=_object(
                {
                    "name_or_symbol": _string("Asset name or symbol to delete"),
                    "confirm_deletion": _boolean("True only after the user confirmed the shown asset details"),
                },
                ["name_or_symbol"],
            ),
            kind="write",
            handler=_delete_asset,
            requires_prior="search_assets_by_name",
        ),
        ToolSpec(
            name="compute_goal_progress",
            description="Compute progress for one goal: percent complete, remaining amount, days left and required monthly saving.",
            args_model=GoalIdArgs,
            parameters=_object({"goal_id": _string("Goal id from a previous search")}, ["goal_id"]),
            kind="read",
            handler=_compute_goal_progress,
        ),
        ToolSpec(
            name="complete_goal",
            description="Mark one goal as completed.",
            args_model=GoalIdArgs,
            parameters=_object({"goal_id": _string("Goal id from a previous search")}, ["goal_id"]),
            kind="write",
            handler=_complete_goal,
        ),
        ToolSpec(
            name="get_asset_performance",
            description="Get stored performance snapshots and live growth since purchase for one asset.",
            args_model=AssetIdArgs,
            parameters=_object({"asset_id": _string("Asset id from a previous search")}, ["asset_id"]),
            kind="read",
            handler=_get_asset_performance,
        ),
        ToolSpec(
            name="refresh_asset_valuation",
            description="Reprice one asset from market data, updating its current value and performance snapshots.",
            args_model=AssetIdArgs,
            parameters=_object({"asset_id": _string("Asset id from a previous search")}, ["asset_id"]),
            kind="write",
            handler=_refresh_asset_valuation,
        ),
        ToolSpec(
            name="get_investment_suggestions",
            description="Suggest a model portfolio for a goal at a given risk level. Defaults to the goal's remaining amount.",
            args_model=InvestmentSuggestionsArgs,
            parameters=_object(
                {
                    "goal_id": _string("Goal id from a previous search"),
                    "risk_level": _string("Risk appetite", _SUGGESTION_RISKS),
                    "target_amount": _number("Amount to invest"),
                },
                ["goal_id", "risk_level"],
            ),
            kind="read",
            handler=_get_investment_suggestions,
        ),
    )
}


def tool_schemas() -> list[dict[str, Any]]:
    """Return Gemini function declaration list."""
    return [spec.declaration() for spec in TOOLS.values()]


def _validation_message(tool_name: str, exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return f"Invalid arguments for {tool_name}: " + "; ".join(problems)


async def execute_tool(
    connection: Any,
    caller_id: str,
    tool_name: str,
    args: Any,
) -> dict[str, Any]:
    """
    Validate args and run one tool for the caller.

    Never raises: every outcome is `{"success": True, ...}` or
    `{"success": False, "error": ...}`. Successful writes invalidate the
    caller's cached dashboard views and list them under `invalidated`.
    """
    spec = TOOLS.get(tool_name)
    if spec is None:
        return {"success": False, "error": f"Unknown tool: {tool_name}"}

    if not isinstance(args, dict):
        return {"success": False, "error": f"Invalid arguments for {tool_name}: expected an object"}

    try:
        parsed = spec.args_model.model_validate(args)
    except ValidationError as exc:
        return {"success": False, "error": _validation_message(tool_name, exc)}

    try:
        payload = await spec.handler(connection, caller_id, parsed)
    except AmbiguousMatchError as exc:
        return to_jsonable({"success": False, "error": exc.message, "matches": exc.matches})
    except FinanceError as exc:
        logger.info("Tool %s failed: %s", tool_name, exc.message)
        return {"success": False, "error": exc.message}
    except Exception:
        logger.exception("Tool %s raised unexpectedly", tool_name)
        return {"success": False, "error": f"Failed to run {tool_name}"}

    if payload.get("success") is False:
        return to_jsonable(payload)

    result: dict[str, Any] = {"success": True, **payload}
    if spec.kind == "write":
        result["invalidated"] = invalidate_dashboard_views(caller_id)

    logger.info("Tool %s succeeded", tool_name)
    return to_jsonable(result)
