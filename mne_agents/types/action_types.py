"""
Terminal results of one command and the orchestration audit trail.

A command ends in exactly one ActionResult:
- NavigateResult: open a route in the app
- TextResult: plain answer or clarifying question
- WriteConfirmResult: a single mutation waiting for the user's approval
- WriteConfirmQueueResult: several mutations, each confirmed separately

Mutations are carried as serializable PendingWrite command objects rather than
closures; they are applied by ``services.write_executor.apply_pending_write``.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from mne_agents.errors import WriteAlreadyAttemptedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TraceEntry:
    label: str
    detail: Optional[str] = None


class AgentTrace:
    """Append-only log of orchestration decisions for one command."""

    def __init__(self):
        self._entries: List[TraceEntry] = []

    def add(self, label: str, detail: Optional[str] = None) -> None:
        self._entries.append(TraceEntry(label=label, detail=detail))
        logger.debug(f"[Agent Trace] {label}" + (f": {detail}" if detail else ""))

    @property
    def entries(self) -> Tuple[TraceEntry, ...]:
        return tuple(self._entries)

    @property
    def labels(self) -> List[str]:
        return [entry.label for entry in self._entries]

    def __len__(self) -> int:
        return len(self._entries)


@dataclass(frozen=True)
class PendingWrite:
    """A validated write-tool invocation awaiting confirmation."""
    kind: str
    payload: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "payload": dict(self.payload)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PendingWrite':
        return cls(kind=str(data["kind"]), payload=dict(data.get("payload") or {}))


@dataclass(frozen=True)
class NavigateResult:
    route: str
    type: str = field(default="navigate", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TextResult:
    message: str
    type: str = field(default="text", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class WriteConfirmResult:
    """One mutation awaiting approval. ``execute`` runs it at most once."""
    confirmation_message: str
    pending_write: PendingWrite
    type: str = field(default="write_confirm", init=False)
    attempted: bool = field(default=False, init=False)

    def execute(self, store, today: Optional[date] = None, background=None) -> str:
        """Apply the pending write against the store after the user approved it.

        Args:
            store: PortfolioStore to mutate
            today: Override for the ledger date (defaults to date.today())
            background: Optional BackgroundTaskRunner for best-effort side calls

        Returns:
            str: Human-readable outcome

        Raises:
            WriteAlreadyAttemptedError: If this confirmation was already executed.
            LedgerError: Any failure of the write itself; not retried.
        """
        if self.attempted:
            raise WriteAlreadyAttemptedError(
                f"This change was already submitted once ({self.confirmation_message}). "
                f"Issue the command again to retry."
            )
        self.attempted = True
        # Import here to avoid a circular import with the write executor
        from mne_agents.services.write_executor import apply_pending_write
        return apply_pending_write(store, self.pending_write, today=today, background=background)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "confirmation_message": self.confirmation_message,
            "pending_write": self.pending_write.to_dict(),
        }


@dataclass
class WriteConfirmQueueResult:
    confirmations: List[WriteConfirmResult]
    type: str = field(default="write_confirm_queue", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "confirmations": [c.to_dict() for c in self.confirmations],
        }
