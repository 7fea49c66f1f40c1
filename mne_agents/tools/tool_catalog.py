"""
The tool catalog exposed to the reasoning service.

Each tool has a pydantic input model; the Anthropic-format schema sent to the
model is generated from it, and the same model validates the invocation that
comes back. Required fields are part of the contract: changing them is a
breaking change for stored prompts and tests.

Read tools run immediately against the snapshot (``ReadToolExecutor``). Write
tools only ever become ``PendingWrite`` confirmations.
"""

import logging
from datetime import date
from typing import Annotated, Any, Dict, List, Literal, Optional, Sequence, Type

from langchain_core.utils.function_calling import convert_to_openai_tool
from pydantic import AfterValidator, BaseModel, Field, ValidationError, field_validator, model_validator

from mne_agents.errors import InputValidationError
from mne_agents.tools.portfolio_analysis import (
    MAX_POSITION_ROWS, MAX_TRANSACTION_ROWS, PortfolioAnalyticsEngine
)
from mne_agents.tools.simulation import recommend_actions_for_goal, simulate_portfolio_actions
from mne_agents.types.portfolio_types import NetWorthPoint, PortfolioSnapshot

logger = logging.getLogger(__name__)

AccountTypeName = Literal['Investment', 'Checking', 'Savings', 'Misc']
OwnershipName = Literal['Individual', 'Joint']
SubtypeName = Literal['Market', 'ESPP', 'RSU']
CashAssetTypeName = Literal['401k', 'CD', 'Cash', 'Deposit', 'HSA']


def _upper_symbol(value: str) -> str:
    symbol = (value or "").strip().upper()
    if not symbol:
        raise ValueError("symbol must not be empty")
    return symbol


Symbol = Annotated[str, AfterValidator(_upper_symbol)]


# ----------------------------------------------------------------------
# Read tool inputs
# ----------------------------------------------------------------------

class GetPortfolioSummaryInput(BaseModel):
    """Totals (net worth, stock value, cash-like value, stock allocation, unrealized stock P&L) and the top 5 holdings."""


class GetPositionsInput(BaseModel):
    """Position rows (value, shares, cost basis, gain, RSU grant progress), largest first."""
    symbols: Optional[List[str]] = Field(None, description="Only these ticker symbols")
    asset_types: Optional[List[str]] = Field(None, description="Only these asset types, e.g. Stock, Cash, 401k")
    location_names: Optional[List[str]] = Field(None, description="Only these brokerages/banks")
    limit: Optional[int] = Field(None, ge=1, le=MAX_POSITION_ROWS, description="Max rows (default 100)")


class GetTransactionsInput(BaseModel):
    """Tax lot rows (count, cost price, purchase date, holding period, gain), newest first."""
    symbols: Optional[List[str]] = Field(None, description="Only these ticker symbols")
    subtypes: Optional[List[SubtypeName]] = Field(None, description="Only these acquisition types")
    start_date: Optional[date] = Field(None, description="Earliest purchase date, YYYY-MM-DD")
    end_date: Optional[date] = Field(None, description="Latest purchase date, YYYY-MM-DD")
    limit: Optional[int] = Field(None, ge=1, le=MAX_TRANSACTION_ROWS, description="Max rows (default 200)")


class GetNetWorthTimeseriesInput(BaseModel):
    """Historical net worth points over a range ending at the latest recorded point."""
    range: Literal['1M', '3M', '6M', '1Y', 'ALL'] = Field('1Y', description="Time window")

    @field_validator('range', mode='before')
    @classmethod
    def upper_range(cls, value):
        return value.strip().upper() if isinstance(value, str) else value


class GetExposureBreakdownInput(BaseModel):
    """Portfolio value bucketed by ticker, theme, asset type or location."""
    dimension: Literal['ticker', 'theme', 'asset_type', 'location'] = Field(..., description="Bucketing dimension")
    include_cash: bool = Field(True, description="Include cash-like assets")


class AnalyzeTaxLotsInput(BaseModel):
    """Tax-loss harvest candidates, lots about to turn long-term, top winners/losers and capital-gains exposure."""
    symbols: Optional[List[str]] = Field(None, description="Only these ticker symbols")
    harvest_threshold_pct: float = Field(-5.0, description="Lots at or below this gain % are harvest candidates")
    upcoming_long_term_days: int = Field(45, ge=0, le=365, description="Window for upcoming long-term promotions")


class SimulatePortfolioActionsInput(BaseModel):
    """What-if simulation of buys, sells, repricing and cash moves. Nothing is saved.

    Action objects: {type: buy|sell, symbol, shares, price?, use_cash?|move_proceeds_to_cash?},
    {type: set_price, symbol, price}, {type: add_cash|remove_cash|set_cash_total, amount}.
    """
    actions: List[Dict[str, Any]] = Field(..., description="Ordered list of action objects")


class RecommendActionsForGoalInput(BaseModel):
    """Prioritized recommendations for one portfolio goal."""
    goal: Literal['reduce_concentration', 'improve_diversification', 'reduce_tax_burden', 'raise_cash_buffer']
    target_max_position_pct: Optional[float] = Field(None, gt=0, le=100)
    min_positions: Optional[int] = Field(None, ge=1)
    max_concentration_hhi: Optional[float] = Field(None, gt=0, le=1)
    target_cash_pct: Optional[float] = Field(None, ge=0, le=100)


# ----------------------------------------------------------------------
# Write tool inputs
# ----------------------------------------------------------------------

class AddStockTransactionInput(BaseModel):
    """Add shares of a stock. Creates the ticker, asset and subtype bucket when missing."""
    symbol: Symbol = Field(..., description="Ticker symbol e.g. AAPL")
    count: float = Field(..., gt=0, description="Number of shares")
    cost_price: float = Field(..., ge=0, description="Price per share at purchase")
    purchase_date: date = Field(..., description="ISO date YYYY-MM-DD")
    subtype: SubtypeName = Field('Market', description="How shares were acquired")
    asset_name: Optional[str] = Field(None, description='Name for the position, defaults to "{SYMBOL} Stock"')
    location_name: Optional[str] = Field(None, description="Brokerage e.g. Fidelity, defaults to Unknown")
    account_type: AccountTypeName = Field('Investment')
    ownership: OwnershipName = Field('Individual')


class AddCashAssetInput(BaseModel):
    """Add a non-stock asset: 401k, CD, Cash, Deposit or HSA."""
    name: str = Field(..., min_length=1, description="Name of the account")
    asset_type: CashAssetTypeName
    location_name: str = Field(..., min_length=1, description="Institution name")
    account_type: AccountTypeName
    ownership: OwnershipName
    price: float = Field(..., ge=0, description="Current value in dollars")
    notes: Optional[str] = Field(None, description="Optional notes")


class AddTickerToWatchlistInput(BaseModel):
    """Add a stock ticker to the watchlist for price tracking."""
    symbol: Symbol = Field(..., description="Ticker symbol e.g. AAPL")


class AddTickerThemesInput(BaseModel):
    """Tag a ticker with investment themes (e.g. AI, Cloud). Existing themes are reused."""
    symbol: Symbol = Field(..., description="Ticker symbol e.g. AAPL")
    themes: List[str] = Field(..., min_length=1, max_length=10, description="Theme names")

    @field_validator('themes')
    @classmethod
    def strip_themes(cls, value: List[str]) -> List[str]:
        themes = [t.strip() for t in value if t and t.strip()]
        if not themes:
            raise ValueError("at least one non-empty theme is required")
        return themes


class AddRsuGrantInput(BaseModel):
    """Record an RSU grant and its vesting schedule."""
    symbol: Symbol = Field(..., description="Ticker symbol e.g. GOOG")
    grant_date: date
    total_shares: float = Field(..., gt=0)
    vest_start: date
    vest_end: date
    cliff_date: Optional[date] = None
    asset_name: Optional[str] = None
    location_name: Optional[str] = None
    account_type: AccountTypeName = Field('Investment')
    ownership: OwnershipName = Field('Individual')

    @model_validator(mode='after')
    def validate_vest_window(self) -> 'AddRsuGrantInput':
        if self.vest_end < self.vest_start:
            raise ValueError("vest_end must not be before vest_start")
        return self


class SaleLot(BaseModel):
    purchase_date: date = Field(..., description="Purchase date of the lot, YYYY-MM-DD")
    count: float = Field(..., gt=0, description="Shares to sell from this lot")


class SellSharesInput(BaseModel):
    """Sell shares from specific tax lots, optionally moving the proceeds to a cash-like account.

    Give either `lots` or `purchase_date` + `count`. Ask the user where the
    proceeds go before calling this unless they already said.
    """
    symbol: Symbol = Field(..., description="Ticker symbol")
    sale_price: float = Field(..., gt=0, description="Price per share received")
    lots: Optional[List[SaleLot]] = Field(None, description="Lots to sell from")
    purchase_date: Optional[date] = Field(None, description="Single-lot form: purchase date")
    count: Optional[float] = Field(None, gt=0, description="Single-lot form: shares to sell")
    source_account: Optional[str] = Field(None, description="Brokerage or position name holding the shares")
    transfer_to: Optional[str] = Field(None, description="Exact name of the cash-like asset receiving the proceeds")
    transfer_amount: Optional[float] = Field(None, gt=0, description="Override for the amount transferred")

    @model_validator(mode='after')
    def validate_lots(self) -> 'SellSharesInput':
        """Ensure a lot list or a single purchase_date + count is given."""
        if self.lots:
            return self
        if self.purchase_date is None or self.count is None:
            raise ValueError("provide either lots or both purchase_date and count")
        return self

    def resolved_lots(self) -> List[SaleLot]:
        if self.lots:
            return list(self.lots)
        return [SaleLot(purchase_date=self.purchase_date, count=self.count)]


class UpdateAssetValueInput(BaseModel):
    """Set the current value of a non-stock asset (cash, 401k, CD, ...)."""
    asset_name: str = Field(..., min_length=1, description="Exact asset name")
    price: float = Field(..., ge=0, description="New value in dollars")


class NavigateToInput(BaseModel):
    """Navigate to a page in the app for view requests."""
    route: Literal['/', '/portfolio', '/tax', '/watchlist', '/charts', '/settings']


READ_TOOLS: Dict[str, Type[BaseModel]] = {
    'get_portfolio_summary': GetPortfolioSummaryInput,
    'get_positions': GetPositionsInput,
    'get_transactions': GetTransactionsInput,
    'get_net_worth_timeseries': GetNetWorthTimeseriesInput,
    'get_exposure_breakdown': GetExposureBreakdownInput,
    'analyze_tax_lots': AnalyzeTaxLotsInput,
    'simulate_portfolio_actions': SimulatePortfolioActionsInput,
    'recommend_actions_for_goal': RecommendActionsForGoalInput,
}

WRITE_TOOLS: Dict[str, Type[BaseModel]] = {
    'add_stock_transaction': AddStockTransactionInput,
    'add_cash_asset': AddCashAssetInput,
    'add_ticker_to_watchlist': AddTickerToWatchlistInput,
    'add_ticker_themes': AddTickerThemesInput,
    'add_rsu_grant': AddRsuGrantInput,
    'sell_shares': SellSharesInput,
    'update_asset_value': UpdateAssetValueInput,
}

NAVIGATION_TOOL = 'navigate_to'

READ_TOOL_NAMES = frozenset(READ_TOOLS)
WRITE_TOOL_NAMES = frozenset(WRITE_TOOLS)

ALL_TOOLS: Dict[str, Type[BaseModel]] = {NAVIGATION_TOOL: NavigateToInput, **WRITE_TOOLS, **READ_TOOLS}


def _tool_schema(name: str, model: Type[BaseModel]) -> Dict[str, Any]:
    function = convert_to_openai_tool(model)["function"]
    parameters = function.get("parameters") or {"type": "object", "properties": {}}
    parameters.setdefault("properties", {})
    return {
        "name": name,
        "description": function.get("description") or name,
        "input_schema": parameters,
    }


def tool_schemas(include_read: bool = True) -> List[Dict[str, Any]]:
    """Anthropic-format tool definitions; read tools can be withheld."""
    schemas = [_tool_schema(NAVIGATION_TOOL, NavigateToInput)]
    schemas.extend(_tool_schema(name, model) for name, model in WRITE_TOOLS.items())
    if include_read:
        schemas.extend(_tool_schema(name, model) for name, model in READ_TOOLS.items())
    return schemas


def _format_validation_error(tool_name: str, error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "input"
        problems.append(f"{location}: {item.get('msg')}")
    return f"Invalid input for {tool_name}: " + "; ".join(problems)


def parse_tool_input(tool_name: str, raw_input: Optional[Dict[str, Any]]) -> BaseModel:
    """Validate a tool invocation against its input model.

    Raises:
        InputValidationError: Unknown tool or invalid input.
    """
    model = ALL_TOOLS.get(tool_name)
    if model is None:
        raise InputValidationError(f"Unknown tool '{tool_name}'")
    try:
        return model.model_validate(raw_input or {})
    except ValidationError as e:
        raise InputValidationError(_format_validation_error(tool_name, e)) from e


class ReadToolExecutor:
    """Runs read tools against one immutable snapshot."""

    def __init__(
        self,
        snapshot: PortfolioSnapshot,
        history: Optional[Sequence[NetWorthPoint]] = None,
        today: Optional[date] = None,
    ):
        self.snapshot = snapshot
        self.today = today
        self.engine = PortfolioAnalyticsEngine(snapshot, history=history, today=today)

    def execute(self, tool_name: str, raw_input: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Execute one read tool and return its JSON-ready result.

        Raises:
            InputValidationError: Unknown tool, non-read tool or invalid input.
        """
        if tool_name not in READ_TOOL_NAMES:
            raise InputValidationError(f"'{tool_name}' is not a read tool")

        # Simulation degrades malformed actions to warnings, so only the envelope is validated
        if tool_name == 'simulate_portfolio_actions':
            actions = (raw_input or {}).get("actions")
            return simulate_portfolio_actions(self.snapshot, actions)

        params = parse_tool_input(tool_name, raw_input)
        engine = self.engine

        if tool_name == 'get_portfolio_summary':
            return engine.position_summary()
        if tool_name == 'get_positions':
            return engine.positions(
                symbols=params.symbols,
                asset_types=params.asset_types,
                location_names=params.location_names,
                limit=params.limit,
            )
        if tool_name == 'get_transactions':
            return engine.transactions(
                symbols=params.symbols,
                subtypes=params.subtypes,
                start_date=params.start_date,
                end_date=params.end_date,
                limit=params.limit,
            )
        if tool_name == 'get_net_worth_timeseries':
            return engine.net_worth_timeseries(params.range)
        if tool_name == 'get_exposure_breakdown':
            return engine.exposure_breakdown(params.dimension, include_cash=params.include_cash)
        if tool_name == 'analyze_tax_lots':
            return engine.tax_lot_analysis(
                symbols=params.symbols,
                harvest_threshold_pct=params.harvest_threshold_pct,
                upcoming_long_term_days=params.upcoming_long_term_days,
            )
        # recommend_actions_for_goal
        overrides = params.model_dump(exclude={"goal"}, exclude_none=True)
        return recommend_actions_for_goal(self.snapshot, params.goal, overrides, today=self.today)
