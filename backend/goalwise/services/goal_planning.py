"""Turn onboarding-style goal answers into a persisted goal shape."""

from __future__ import annotations

import calendar
from datetime import date
from decimal import Decimal
from typing import Any, Literal, get_args

from pydantic import BaseModel, Field, field_validator, model_validator

from goalwise.errors import InvalidInputError
from goalwise.services.financial_math import (
    DEFAULT_LIFE_EXPECTANCY,
    future_cost,
    retirement_corpus,
)
from goalwise.utils import quantize_amount

GoalKeyword = Literal[
    "home",
    "education",
    "retirement",
    "travel",
    "car",
    "wedding",
    "emergency_fund",
    "debt_repayment",
    "business",
    "health",
    "charity",
    "inheritance",
    "other",
]
GOAL_KEYWORDS: tuple[str, ...] = get_args(GoalKeyword)
GoalPriority = Literal["high", "medium", "low"]

# Sparse category-specific answers stored under goals.details.
DETAIL_FIELDS: tuple[str, ...] = (
    "monthly_expenses",
    "current_age",
    "retirement_age",
    "life_expectancy",
    "taking_loan",
    "down_payment_percentage",
    "guest_count",
    "include_honeymoon",
    "monthly_income",
    "desired_coverage_months",
    "debt_type",
    "interest_rate",
    "minimum_payment",
    "business_type",
    "employee_count",
    "family_size",
    "insurance_coverage",
    "donation_type",
    "recurring_amount",
)


def normalize_priority_value(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


def normalize_keyword_value(value: Any) -> Any:
    if isinstance(value, str):
        return "_".join(value.strip().lower().replace("-", " ").split())
    return value


class GoalDetails(BaseModel):
    monthly_expenses: Decimal | None = Field(default=None, ge=Decimal("0"))
    current_age: int | None = Field(default=None, ge=0, le=120)
    retirement_age: int | None = Field(default=None, gt=0, le=120)
    life_expectancy: int | None = Field(default=None, gt=0, le=130)
    taking_loan: bool | None = None
    down_payment_percentage: Decimal | None = Field(default=None, ge=Decimal("1"), le=Decimal("100"))
    guest_count: int | None = Field(default=None, ge=1)
    include_honeymoon: bool | None = None
    monthly_income: Decimal | None = Field(default=None, ge=Decimal("0"))
    desired_coverage_months: int | None = Field(default=None, ge=3, le=24)
    debt_type: Literal["credit_card", "personal_loan", "student_loan", "other"] | None = None
    interest_rate: Decimal | None = Field(default=None, ge=Decimal("0"), le=Decimal("100"))
    minimum_payment: Decimal | None = Field(default=None, ge=Decimal("0"))
    business_type: str | None = Field(default=None, max_length=120)
    employee_count: int | None = Field(default=None, ge=0)
    family_size: int | None = Field(default=None, ge=1)
    insurance_coverage: Decimal | None = Field(default=None, ge=Decimal("0"))
    donation_type: Literal["one_time", "recurring"] | None = None
    recurring_amount: Decimal | None = Field(default=None, ge=Decimal("0"))


class GoalPlanInput(GoalDetails):
    name: str | None = Field(default=None, max_length=120)
    description: str | None = Field(default=None, max_length=1000)
    keywords: list[GoalKeyword] = Field(min_length=1)
    cost: Decimal | None = Field(default=None, gt=Decimal("0"))
    years: int | None = Field(default=None, ge=1, le=50)
    upfront_amount: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    priority: GoalPriority = "medium"

    @field_validator("priority", mode="before")
    @classmethod
    def _normalize_priority(cls, value: Any) -> Any:
        return normalize_priority_value(value)

    @field_validator("keywords", mode="before")
    @classmethod
    def _normalize_keywords(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [value]
        if isinstance(value, list):
            return [normalize_keyword_value(item) for item in value]
        return value

    @model_validator(mode="after")
    def _check_category_inputs(self) -> "GoalPlanInput":
        main = self.keywords[0]
        if "retirement" in self.keywords:
            missing = [
                name
                for name in ("monthly_expenses", "current_age", "retirement_age")
                if getattr(self, name) is None
            ]
            if missing:
                raise ValueError(f"retirement goals require: {', '.join(missing)}")
            return self

        if main == "emergency_fund" and self.cost is None:
            if self.monthly_income is None or self.desired_coverage_months is None:
                raise ValueError("emergency fund goals require cost or monthly_income and desired_coverage_months")
            if self.years is None:
                raise ValueError("years is required")
            return self

        if self.cost is None or self.years is None:
            raise ValueError("cost and years are required")
        return self


def add_years(start: date, years: int) -> date:
    target_year = start.year + years
    day = min(start.day, calendar.monthrange(target_year, start.month)[1])
    return date(target_year, start.month, day)


def years_until(today: date, target_date: date) -> Decimal:
    """Fractional years between two dates (never negative)."""
    return Decimal(max((target_date - today).days, 0)) / Decimal("365.25")


def _default_name(keyword: str) -> str:
    return keyword.replace("_", " ").title()


def goal_details(plan: GoalDetails) -> dict[str, Any]:
    """Only set answers are kept; unset fields stay absent rather than null."""
    raw = plan.model_dump(include=set(DETAIL_FIELDS), exclude_none=True)
    return {
        key: (str(value) if isinstance(value, Decimal) else value)
        for key, value in raw.items()
    }


def plan_goal(
    plan: GoalPlanInput,
    today: date,
    inflation_rate: Decimal | float,
) -> dict[str, Any]:
    """Compute target amount, date and inflation-adjusted target for a new goal."""
    keywords = list(dict.fromkeys(plan.keywords))
    main = keywords[0]

    if "retirement" in keywords:
        current_age = int(plan.current_age)
        retirement_age = int(plan.retirement_age)
        target_amt = retirement_corpus(
            plan.monthly_expenses,
            current_age,
            retirement_age,
            plan.life_expectancy or DEFAULT_LIFE_EXPECTANCY,
            inflation_rate,
        )
        horizon_years = retirement_age - current_age
    elif main == "emergency_fund" and plan.cost is None:
        target_amt = quantize_amount(
            plan.monthly_income * plan.desired_coverage_months
        )
        horizon_years = int(plan.years)
    else:
        target_amt = quantize_amount(plan.cost)
        horizon_years = int(plan.years)

    if target_amt <= 0:
        raise InvalidInputError("Computed target amount must be greater than 0")

    return {
        "name": (plan.name or "").strip() or _default_name(main),
        "description": plan.description,
        "keywords": keywords,
        "current_amt": quantize_amount(plan.upfront_amount),
        "target_amt": quantize_amount(target_amt),
        "target_amt_inflation_adjusted": quantize_amount(
            future_cost(target_amt, horizon_years, inflation_rate)
        ),
        "target_date": add_years(today, horizon_years),
        "priority": plan.priority,
        "details": goal_details(plan),
    }
