"""
What-if simulation over an in-memory copy of the portfolio.

The simulator collapses the snapshot to ``{symbol -> holding}`` plus a single
cash-like balance, applies buy / sell / reprice / cash actions, and reports the
before/after summaries. It never raises on bad input: each malformed or
unsupported action is skipped and recorded as a warning, so a batch always
completes.

The goal-based recommendation layer is built on the same summaries plus the
tax-lot analysis.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional

from mne_agents.errors import InputValidationError
from mne_agents.tools.ledger import cost_basis, market_value
from mne_agents.tools.portfolio_analysis import PortfolioAnalyticsEngine
from mne_agents.types.portfolio_types import PortfolioSnapshot

logger = logging.getLogger(__name__)

SHARE_EPSILON = 1e-9
SUPPORTED_ACTIONS = ("buy", "sell", "set_price", "add_cash", "remove_cash", "set_cash_total")

SIMULATION_ASSUMPTIONS = [
    "Sales realize P&L against the average cost basis of the holding.",
    "Actions without a price use the ticker's last known price.",
    "All non-stock assets are pooled into one cash-like balance.",
    "Taxes, fees and slippage are not modeled.",
]

GOALS = ("reduce_concentration", "improve_diversification", "reduce_tax_burden", "raise_cash_buffer")
PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}

DEFAULT_GOAL_PARAMS = {
    "target_max_position_pct": 20.0,
    "min_positions": 10,
    "max_concentration_hhi": 0.15,
    "target_cash_pct": 10.0,
    "harvest_threshold_pct": -5.0,
    "upcoming_long_term_days": 45,
}


@dataclass
class SimulatedHolding:
    symbol: str
    shares: float
    cost_basis: float
    current_price: Optional[float] = None

    @property
    def value(self) -> float:
        return self.shares * (self.current_price or 0.0)


def _number(action: Dict[str, Any], key: str, positive: bool = True, required: bool = True) -> Optional[float]:
    raw = action.get(key)
    if raw is None:
        if required:
            raise ValueError(f"'{key}' is required")
        return None
    if isinstance(raw, bool):
        raise ValueError(f"'{key}' must be a number")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ValueError(f"'{key}' must be a number, got {raw!r}")
    if value != value or value in (float("inf"), float("-inf")):
        raise ValueError(f"'{key}' must be finite")
    if positive and value <= 0:
        raise ValueError(f"'{key}' must be greater than 0")
    if not positive and value < 0:
        raise ValueError(f"'{key}' cannot be negative")
    return value


def _flag(action: Dict[str, Any], key: str, default: bool = True) -> bool:
    raw = action.get(key)
    if raw is None:
        return default
    if isinstance(raw, str):
        return raw.strip().lower() not in ("false", "no", "0")
    return bool(raw)


class PortfolioSimulator:
    """Mutable working copy of a snapshot for what-if analysis."""

    def __init__(self, holdings: Optional[Dict[str, SimulatedHolding]] = None, cash_like_value: float = 0.0):
        self.holdings: Dict[str, SimulatedHolding] = dict(holdings or {})
        self.cash_like_value = float(cash_like_value)
        self.realized_pnl = 0.0
        self.warnings: List[str] = []
        self.applied_actions: List[Dict[str, Any]] = []

    @classmethod
    def from_snapshot(cls, snapshot: PortfolioSnapshot) -> 'PortfolioSimulator':
        holdings: Dict[str, SimulatedHolding] = {}
        cash_like = 0.0
        for asset in snapshot.assets:
            if not asset.is_stock:
                cash_like += float(market_value(asset))
                continue
            symbol = asset.symbol or asset.name.upper()
            price = asset.ticker.current_price if asset.ticker else None
            holding = holdings.setdefault(symbol, SimulatedHolding(
                symbol=symbol,
                shares=0.0,
                cost_basis=0.0,
                current_price=float(price) if price else None,
            ))
            holding.shares += float(asset.total_shares)
            holding.cost_basis += float(cost_basis(asset))
        holdings = {s: h for s, h in holdings.items() if h.shares > SHARE_EPSILON}
        return cls(holdings=holdings, cash_like_value=cash_like)

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def summary(self) -> Dict[str, Any]:
        stock_value = sum(h.value for h in self.holdings.values())
        net_worth = stock_value + self.cash_like_value

        holdings = []
        for holding in self.holdings.values():
            value = holding.value
            holdings.append({
                "symbol": holding.symbol,
                "shares": round(holding.shares, 6),
                "current_price": holding.current_price,
                "market_value": round(value, 2),
                "cost_basis": round(holding.cost_basis, 2),
                "unrealized_gain": round(value - holding.cost_basis, 2),
                "allocation_pct": round(value / net_worth * 100, 2) if net_worth > 0 else 0.0,
            })
        holdings.sort(key=lambda h: (-h["market_value"], h["symbol"]))

        if stock_value > 0:
            hhi = sum((h.value / stock_value) ** 2 for h in self.holdings.values())
        else:
            hhi = 0.0

        return {
            "net_worth": round(net_worth, 2),
            "stock_value": round(stock_value, 2),
            "cash_like_value": round(self.cash_like_value, 2),
            "cash_allocation_pct": round(self.cash_like_value / net_worth * 100, 2) if net_worth > 0 else 0.0,
            "position_count": len(self.holdings),
            "concentration_hhi": round(hhi, 4),
            "holdings": holdings,
        }

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def apply(self, action: Any, index: int = 0) -> bool:
        """Apply one action. Returns False (with a warning) when it was skipped."""
        label = f"Action {index + 1}"
        if not isinstance(action, dict):
            self.warnings.append(f"{label} skipped: expected an object, got {type(action).__name__}")
            return False

        action_type = str(action.get("type") or "").strip().lower()
        if action_type not in SUPPORTED_ACTIONS:
            self.warnings.append(
                f"{label} skipped: unsupported action type '{action.get('type')}' "
                f"(supported: {', '.join(SUPPORTED_ACTIONS)})"
            )
            return False

        try:
            applied = getattr(self, f"_{action_type}")(action, label)
        except (ValueError, TypeError) as e:
            self.warnings.append(f"{label} ({action_type}) skipped: {e}")
            return False
        except Exception as e:
            logger.warning(f"[Simulation] Unexpected failure applying {action_type}: {e}", exc_info=True)
            self.warnings.append(f"{label} ({action_type}) skipped: {e}")
            return False

        if applied is None:
            return False
        self.applied_actions.append(applied)
        return True

    def _symbol(self, action: Dict[str, Any]) -> str:
        symbol = str(action.get("symbol") or "").strip().upper()
        if not symbol:
            raise ValueError("'symbol' is required")
        return symbol

    def _resolve_price(self, action: Dict[str, Any], symbol: str) -> Optional[float]:
        price = _number(action, "price", required=False)
        if price is not None:
            return price
        holding = self.holdings.get(symbol)
        return holding.current_price if holding and holding.current_price else None

    def _buy(self, action: Dict[str, Any], label: str) -> Optional[Dict[str, Any]]:
        symbol = self._symbol(action)
        shares = _number(action, "shares")
        price = self._resolve_price(action, symbol)
        if price is None:
            self.warnings.append(f"{label} (buy) skipped: no price available for {symbol}")
            return None

        holding = self.holdings.setdefault(
            symbol, SimulatedHolding(symbol=symbol, shares=0.0, cost_basis=0.0, current_price=price)
        )
        if not holding.current_price:
            holding.current_price = price
        cost = shares * price
        holding.shares += shares
        holding.cost_basis += cost

        use_cash = _flag(action, "use_cash", True)
        if use_cash:
            self.cash_like_value -= cost
            if self.cash_like_value < 0:
                self.warnings.append(f"{label} (buy): cash-like balance is now negative")
        return {"type": "buy", "symbol": symbol, "shares": shares, "price": price,
                "cost": round(cost, 2), "use_cash": use_cash}

    def _sell(self, action: Dict[str, Any], label: str) -> Optional[Dict[str, Any]]:
        symbol = self._symbol(action)
        requested = _number(action, "shares")
        holding = self.holdings.get(symbol)
        if holding is None:
            self.warnings.append(f"{label} (sell) skipped: {symbol} is not held")
            return None
        price = self._resolve_price(action, symbol)
        if price is None:
            self.warnings.append(f"{label} (sell) skipped: no price available for {symbol}")
            return None

        shares = requested
        if requested > holding.shares:
            shares = holding.shares
            self.warnings.append(
                f"{label} (sell): requested {requested:g} {symbol} shares but only "
                f"{holding.shares:g} held; sold {holding.shares:g}"
            )

        avg_cost = holding.cost_basis / holding.shares if holding.shares > 0 else 0.0
        proceeds = shares * price
        realized = (price - avg_cost) * shares
        self.realized_pnl += realized
        holding.cost_basis -= avg_cost * shares
        holding.shares -= shares
        if holding.shares < SHARE_EPSILON:
            del self.holdings[symbol]

        move_to_cash = _flag(action, "move_proceeds_to_cash", True)
        if move_to_cash:
            self.cash_like_value += proceeds
        return {"type": "sell", "symbol": symbol, "shares": shares, "price": price,
                "proceeds": round(proceeds, 2), "realized_pnl": round(realized, 2),
                "move_proceeds_to_cash": move_to_cash}

    def _set_price(self, action: Dict[str, Any], label: str) -> Optional[Dict[str, Any]]:
        symbol = self._symbol(action)
        price = _number(action, "price")
        holding = self.holdings.get(symbol)
        if holding is None:
            self.warnings.append(f"{label} (set_price) skipped: {symbol} is not held")
            return None
        holding.current_price = price
        return {"type": "set_price", "symbol": symbol, "price": price}

    def _add_cash(self, action: Dict[str, Any], label: str) -> Dict[str, Any]:
        amount = _number(action, "amount")
        self.cash_like_value += amount
        return {"type": "add_cash", "amount": amount}

    def _remove_cash(self, action: Dict[str, Any], label: str) -> Dict[str, Any]:
        amount = _number(action, "amount")
        if amount > self.cash_like_value:
            self.warnings.append(
                f"{label} (remove_cash): requested ${amount:,.2f} but only "
                f"${max(self.cash_like_value, 0):,.2f} available; removed what was available"
            )
            amount = max(self.cash_like_value, 0.0)
        self.cash_like_value -= amount
        return {"type": "remove_cash", "amount": amount}

    def _set_cash_total(self, action: Dict[str, Any], label: str) -> Dict[str, Any]:
        amount = _number(action, "amount", positive=False)
        self.cash_like_value = amount
        return {"type": "set_cash_total", "amount": amount}


def simulate_portfolio_actions(snapshot: PortfolioSnapshot, actions: Any) -> Dict[str, Any]:
    """Apply a batch of what-if actions to a copy of the snapshot.

    Never raises: invalid actions only show up in ``warnings``.
    """
    simulator = PortfolioSimulator.from_snapshot(snapshot)
    before = simulator.summary()

    if actions is None:
        actions = []
    if not isinstance(actions, (list, tuple)):
        simulator.warnings.append(f"'actions' must be a list, got {type(actions).__name__}; nothing applied")
        actions = []

    for index, action in enumerate(actions):
        simulator.apply(action, index)

    after = simulator.summary()
    delta = {
        key: round(after[key] - before[key], 4 if key == "concentration_hhi" else 2)
        for key in ("net_worth", "stock_value", "cash_like_value", "cash_allocation_pct", "concentration_hhi")
    }
    delta["position_count"] = after["position_count"] - before["position_count"]

    return {
        "before": before,
        "after": after,
        "delta": delta,
        "realized_pnl": round(simulator.realized_pnl, 2),
        "applied_actions": simulator.applied_actions,
        "warnings": simulator.warnings,
        "assumptions": list(SIMULATION_ASSUMPTIONS),
    }


# ----------------------------------------------------------------------
# Goal-based recommendations
# ----------------------------------------------------------------------

def _recommendation(priority: str, title: str, detail: str,
                    suggested_actions: Optional[List[Dict[str, Any]]] = None, **extra) -> Dict[str, Any]:
    rec = {"priority": priority, "title": title, "detail": detail,
           "suggested_actions": suggested_actions or []}
    rec.update(extra)
    return rec


def _reduce_concentration(snapshot: PortfolioSnapshot, current: Dict, params: Dict) -> List[Dict]:
    target = float(params["target_max_position_pct"])
    net_worth = current["net_worth"]
    holdings = [h for h in current["holdings"] if h["market_value"] > 0 and h["current_price"]]
    if not holdings:
        return [_recommendation("low", "No priced stock holdings", "There is nothing to trim.")]

    recs = []
    for holding in holdings[:3]:
        if holding["allocation_pct"] <= target:
            continue
        excess_value = holding["market_value"] - target / 100 * net_worth
        shares = min(excess_value / holding["current_price"], holding["shares"])
        trade = [{"type": "sell", "symbol": holding["symbol"], "shares": round(shares, 4)}]
        projected = simulate_portfolio_actions(snapshot, trade)["after"]
        projected_pct = next(
            (h["allocation_pct"] for h in projected["holdings"] if h["symbol"] == holding["symbol"]), 0.0
        )
        recs.append(_recommendation(
            "high" if holding["allocation_pct"] >= 2 * target else "medium",
            f"Trim {holding['symbol']} toward {target:g}% of net worth",
            f"{holding['symbol']} is {holding['allocation_pct']:.1f}% of net worth. Selling about "
            f"{shares:,.2f} shares (${excess_value:,.2f}) brings it to roughly {projected_pct:.1f}%.",
            trade,
            projected_allocation_pct=projected_pct,
        ))

    if not recs:
        largest = holdings[0]
        recs.append(_recommendation(
            "low",
            "Concentration within target",
            f"Largest holding {largest['symbol']} is {largest['allocation_pct']:.1f}% of net worth, "
            f"under the {target:g}% cap.",
        ))
    return recs


def _improve_diversification(current: Dict, params: Dict) -> List[Dict]:
    min_positions = int(params["min_positions"])
    max_hhi = float(params["max_concentration_hhi"])
    recs = []

    count = current["position_count"]
    if count < min_positions:
        recs.append(_recommendation(
            "high" if count <= 2 else "medium",
            "Add more positions",
            f"The portfolio holds {count} stock position(s); at least {min_positions} spreads single-company risk.",
        ))

    hhi = current["concentration_hhi"]
    if hhi > max_hhi and current["holdings"]:
        top = current["holdings"][0]
        recs.append(_recommendation(
            "high",
            "Stock value is concentrated",
            f"Concentration index is {hhi:.3f} (target <= {max_hhi:.3f}); {top['symbol']} dominates at "
            f"{top['allocation_pct']:.1f}% of net worth.",
        ))

    if not recs:
        recs.append(_recommendation(
            "low",
            "Diversification looks healthy",
            f"{count} positions with a concentration index of {hhi:.3f}.",
        ))
    return recs


def _reduce_tax_burden(snapshot: PortfolioSnapshot, params: Dict, today: Optional[date]) -> List[Dict]:
    analysis = PortfolioAnalyticsEngine(snapshot, today=today).tax_lot_analysis(
        harvest_threshold_pct=float(params["harvest_threshold_pct"]),
        upcoming_long_term_days=int(params["upcoming_long_term_days"]),
    )
    recs = []
    for lot in analysis["harvest_candidates"][:3]:
        recs.append(_recommendation(
            "high",
            f"Harvest the {lot['symbol']} loss from {lot['purchase_date']}",
            f"{lot['count']:g} shares are down {lot['gain_pct']:.1f}% "
            f"(${lot['unrealized_gain']:,.2f}); selling realizes the loss to offset gains.",
            [{"type": "sell", "symbol": lot["symbol"], "shares": lot["count"]}],
        ))
    for lot in analysis["upcoming_long_term"][:3]:
        recs.append(_recommendation(
            "medium",
            f"Hold {lot['symbol']} lot from {lot['purchase_date']} a little longer",
            f"It turns long-term in {lot['days_to_long_term']} day(s) with ${lot['unrealized_gain']:,.2f} "
            f"of gain; selling before then is taxed at short-term rates.",
        ))
    if not recs:
        recs.append(_recommendation(
            "low",
            "No tax-lot opportunities right now",
            "No lots are past the harvest threshold and none are about to turn long-term.",
        ))
    return recs


def _raise_cash_buffer(snapshot: PortfolioSnapshot, current: Dict, params: Dict) -> List[Dict]:
    target = float(params["target_cash_pct"])
    net_worth = current["net_worth"]
    cash = current["cash_like_value"]
    cash_pct = current["cash_allocation_pct"]
    shortfall = target / 100 * net_worth - cash

    if shortfall <= 0:
        return [_recommendation(
            "low",
            "Cash buffer meets target",
            f"Cash-like assets are {cash_pct:.1f}% of net worth (target {target:g}%).",
        )]

    priority = "high" if cash_pct < target / 2 else "medium"
    funding = next((h for h in current["holdings"] if h["current_price"]), None)
    if funding is None:
        return [_recommendation(
            priority,
            f"Add ${shortfall:,.2f} to cash",
            f"Cash-like assets are {cash_pct:.1f}% of net worth against a {target:g}% target.",
        )]

    shares = min(shortfall / funding["current_price"], funding["shares"])
    trade = [{"type": "sell", "symbol": funding["symbol"], "shares": round(shares, 4)}]
    projected = simulate_portfolio_actions(snapshot, trade)["after"]
    return [_recommendation(
        priority,
        f"Raise ${shortfall:,.2f} of cash",
        f"Cash-like assets are {cash_pct:.1f}% of net worth against a {target:g}% target. Selling about "
        f"{shares:,.2f} {funding['symbol']} shares lifts cash to {projected['cash_allocation_pct']:.1f}%.",
        trade,
        projected_cash_pct=projected["cash_allocation_pct"],
    )]


def recommend_actions_for_goal(
    snapshot: PortfolioSnapshot,
    goal: str,
    params: Optional[Dict[str, Any]] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """Prioritized textual recommendations for one portfolio goal.

    Args:
        snapshot: Current portfolio
        goal: One of reduce_concentration, improve_diversification,
            reduce_tax_burden, raise_cash_buffer
        params: Overrides for DEFAULT_GOAL_PARAMS
        today: Ledger date for tax-lot analysis

    Returns:
        Dict with the current summary and recommendations sorted high -> low.
    """
    if goal not in GOALS:
        raise InputValidationError(f"Unknown goal '{goal}'. Use one of {', '.join(GOALS)}.")

    merged = dict(DEFAULT_GOAL_PARAMS)
    merged.update({k: v for k, v in (params or {}).items() if v is not None and k in DEFAULT_GOAL_PARAMS})

    current = PortfolioSimulator.from_snapshot(snapshot).summary()

    if goal == "reduce_concentration":
        recs = _reduce_concentration(snapshot, current, merged)
    elif goal == "improve_diversification":
        recs = _improve_diversification(current, merged)
    elif goal == "reduce_tax_burden":
        recs = _reduce_tax_burden(snapshot, merged, today)
    else:
        recs = _raise_cash_buffer(snapshot, current, merged)

    recs.sort(key=lambda r: PRIORITY_ORDER[r["priority"]])
    return {
        "goal": goal,
        "parameters": merged,
        "current": current,
        "recommendations": recs,
    }
