"""
Error taxonomy for the command agent and ledger write path.

Every error raised by the ledger carries a message that is safe to show to the
user verbatim.
"""

from datetime import date
from typing import List, Optional, Sequence, Union


class LedgerError(Exception):
    """Base class for all portfolio ledger errors."""


class InputValidationError(LedgerError):
    """Malformed request (bad lot entry, non-positive counts, wrong asset kind).

    Raised before any store access.
    """


class NotFoundError(LedgerError):
    """No ticker, asset or lot matches the request."""


class AmbiguityError(LedgerError):
    """More than one plausible match for an account or destination name."""

    def __init__(self, message: str, candidates: Optional[Sequence[str]] = None):
        self.candidates: List[str] = list(candidates or [])
        if self.candidates:
            message = f"{message} Candidates: {', '.join(self.candidates)}"
        super().__init__(message)


class InsufficientSharesError(LedgerError):
    """A lot date holds fewer shares than the sale asks for."""

    def __init__(
        self,
        symbol: str,
        purchase_date: Union[date, str],
        requested: float,
        available: float,
    ):
        self.symbol = symbol
        self.purchase_date = purchase_date
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient {symbol} shares in lot {purchase_date}: "
            f"{_fmt_shares(available)} available, {_fmt_shares(requested)} requested"
        )


class ExternalServiceError(LedgerError):
    """The reasoning service, the portfolio store or a quote API failed."""


class WriteAlreadyAttemptedError(LedgerError):
    """A confirmation was executed a second time."""


def _fmt_shares(value: float) -> str:
    value = float(value)
    return str(int(value)) if value.is_integer() else f"{value:g}"
