from pydantic import BaseModel, field_validator
from typing import Optional, Literal

INTENT_TYPES = (
    'BALANCE_ON_DATE',
    'OPEN_BALANCES_ON_DATE',
    'UPCOMING_OPS',
    'INVEST_CAPACITY',
    'EXPENSE_FEASIBILITY',
    'FORECAST_END_OF_MONTH',
    'FORECAST_OPEN_END_OF_MONTH',
    'CATEGORY_FACT_BY_CATEGORY',
    'INSIGHTS',
)

class TargetMonth(BaseModel):
    year: int
    month: int

    @field_validator('month')
    @classmethod
    def _month_range(cls, value):
        if not 1 <= value <= 12:
            raise ValueError('month must be 1..12')
        return value

class Intent(BaseModel):
    type: Literal[INTENT_TYPES] = 'INSIGHTS'
    dateKey: Optional[str] = None
    scope: Literal['open', 'hidden', 'all'] = 'all'
    targetMonth: Optional[TargetMonth] = None
    categoryRaw: Optional[str] = None
    requestedAmount: Optional[float] = None
    basis: Literal['balance', 'inflows'] = 'balance'
    startDateKey: Optional[str] = None
    endDateKey: Optional[str] = None

    @field_validator('type', mode='before')
    @classmethod
    def _unknown_type_is_insights(cls, value):
        text = str(value or '').upper()
        return text if text in INTENT_TYPES else 'INSIGHTS'

    @field_validator('scope', mode='before')
    @classmethod
    def _default_scope(cls, value):
        text = str(value or 'all').lower()
        return text if text in ('open', 'hidden', 'all') else 'all'

    @field_validator('basis', mode='before')
    @classmethod
    def _default_basis(cls, value):
        text = str(value or 'balance').lower()
        return text if text in ('balance', 'inflows') else 'balance'

class RenderResult(BaseModel):
    ok: bool
    numeric: bool
    text: str
    meta: Optional[dict] = None

class AuditResult(BaseModel):
    ok: bool
    errors: list[str]
    warnings: list[str]
    expected: dict
    observed: dict
