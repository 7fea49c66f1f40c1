"""
Command agent: turns a conversation into exactly one ActionResult.

States, in order:

    START -> (TRANSFER_CLARIFICATION) -> READ_LOOP -> CLARIFICATION_LOOP -> RESOLVE

- START handles ``mock:`` commands and short-circuits a reported sale that
  says nothing about the proceeds, without calling the reasoning service.
- READ_LOOP lets the model call read tools for at most ``max_read_rounds``
  service calls; results go back as the next turn. On the last round the read
  tools are withheld so the model has to answer, write or navigate.
- CLARIFICATION_LOOP retries with the full, unfiltered portfolio when the
  model asks the user for data the ledger already holds.
- RESOLVE turns the final response into navigate / write confirmation(s) /
  text. Nothing is written here; writes wait for ``WriteConfirmResult.execute``.

No state survives between commands except the caller-owned conversation.
"""

import json
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Union

from mne_agents.config import AgentSettings
from mne_agents.errors import ExternalServiceError, InputValidationError, LedgerError
from mne_agents.reasoning import ReasoningResponse, ReasoningService, ToolUseBlock
from mne_agents.services.portfolio_store import PortfolioStore
from mne_agents.services.write_executor import MOCK_WRITE, build_write_confirmation
from mne_agents.tools.portfolio_analysis import PortfolioAnalyticsEngine
from mne_agents.tools.tool_catalog import (
    NAVIGATION_TOOL, READ_TOOL_NAMES, WRITE_TOOL_NAMES, ReadToolExecutor, parse_tool_input, tool_schemas
)
from mne_agents.types.action_types import (
    AgentTrace, NavigateResult, PendingWrite, TextResult, WriteConfirmQueueResult, WriteConfirmResult
)
from mne_agents.types.portfolio_types import ConversationTurn, PortfolioSnapshot

logger = logging.getLogger(__name__)

MAX_READ_WORKERS = 4

MOCK_PREFIX = re.compile(r"^\s*mock:\s*", re.IGNORECASE)
MOCK_WRITE_MESSAGE = "[MOCK] Add 10 AAPL shares at $220.00/share purchased on 2026-02-21 (Short Term, Market)"

TRANSFER_QUESTION = (
    "Did you move the proceeds from this sale into a cash account? "
    "Tell me the account name (e.g. \"move it to Checking\"), or say \"no transfer\"."
)

# A reported sale ("sold ...") or a commanded one with a count ("sell 10 ...")
SALE_STATEMENT = re.compile(r"\bsold\b|\bsell(ing)?\s+(\d[\d,.]*|all|half)\b", re.IGNORECASE)
HYPOTHETICAL = re.compile(
    r"^\s*(should|would|could|can|what|how|why|when|if|is|are|do|does)\b|\b(what if|simulate|hypothetical)\b",
    re.IGNORECASE,
)
READ_INTENT = re.compile(
    r"\b(which|show|tell|list|recommend\w*|suggest\w*|impact|harvest\w*|analy[sz]e|compare|explain|what to sell)\b",
    re.IGNORECASE,
)
TRANSFER_INTENT = re.compile(
    r"\b(transfer\w*|mov(e|ed|ing)|deposit\w*|proceeds|sen[dt]|put (it|them|the \w+) (in|into)|"
    r"into (my )?\w+|(keep|kept|leave|left) (it|them|the cash|the money)|no transfer|nowhere|"
    r"(don'?t|do not|didn'?t|did not) (transfer|move|deposit))\b",
    re.IGNORECASE,
)
PROCEEDS_QUESTION = re.compile(r"\b(proceeds|transfer)\b", re.IGNORECASE)

CLARIFYING_ASK = re.compile(
    r"\b(how many|which|what (is|are|was|were)|when did|"
    r"(could|can) you (tell|provide|share|confirm|specify)|do you (have|know|own|hold)|"
    r"please (provide|share|tell|confirm|specify))\b",
    re.IGNORECASE,
)
PORTFOLIO_DETAIL = re.compile(
    r"\b(shares?|lots?|positions?|holdings?|accounts?|price|cost|purchased?|bought|balance|value|"
    r"portfolio|ticker|grants?|brokerage)\b",
    re.IGNORECASE,
)

SYMBOL_TOKEN = re.compile(r"\b[A-Za-z][A-Za-z.]{0,5}\b")

SYSTEM_PROMPT = """You are a portfolio assistant for a personal finance app called mne.
The user issues commands in natural language to read or change their portfolio.

Portfolio context (JSON):
{context}

Rules:
- Use the read tools when you need data that is not in the context above.
- For view requests call navigate_to. For changes call the matching write tool; the user confirms every write.
- Never ask the user for data the portfolio already contains.
- When recording a sale, include transfer_to if the user named a destination for the proceeds.
- Answer questions in plain, concise text.
Today's date is {today}"""


def is_transfer_question(text: str) -> bool:
    return bool(text) and "?" in text and bool(PROCEEDS_QUESTION.search(text))


def needs_transfer_clarification(conversation: Sequence[ConversationTurn]) -> bool:
    """True for a reported sale that says nothing about where the proceeds went."""
    latest = conversation[-1].content
    if not SALE_STATEMENT.search(latest) or HYPOTHETICAL.search(latest) or READ_INTENT.search(latest):
        return False
    if latest.rstrip().endswith("?"):
        return False
    if TRANSFER_INTENT.search(latest):
        return False
    previous_assistant = next((t for t in reversed(conversation[:-1]) if t.role == "assistant"), None)
    if previous_assistant is not None and is_transfer_question(previous_assistant.content):
        return False
    return True


def is_clarifying_question(text: str) -> bool:
    """A question back to the user about portfolio details (not about proceeds)."""
    if not text or "?" not in text:
        return False
    if is_transfer_question(text):
        return False
    return bool(CLARIFYING_ASK.search(text)) and bool(PORTFOLIO_DETAIL.search(text))


def mentioned_symbols(text: str, snapshot: PortfolioSnapshot) -> List[str]:
    known = {t.symbol for t in snapshot.tickers}
    known.update(a.symbol for a in snapshot.stock_assets if a.symbol)
    found = []
    for token in SYMBOL_TOKEN.findall(text or ""):
        candidate = token.upper()
        # Short lowercase words ("a", "on") are never taken as symbols
        if candidate in known and (token.isupper() or len(token) >= 3) and candidate not in found:
            found.append(candidate)
    return found


def _to_json(data: Any) -> str:
    return json.dumps(data, default=str, separators=(",", ":"))


class CommandAgent:
    """Runs one natural-language command against a store and a reasoning service.

    Args:
        store: PortfolioStore the snapshot is read from
        reasoning: ReasoningService used for every model call
        settings: Round caps (defaults from the environment)
        today: Ledger date override
    """

    def __init__(
        self,
        store: PortfolioStore,
        reasoning: ReasoningService,
        settings: Optional[AgentSettings] = None,
        today: Optional[date] = None,
    ):
        self.store = store
        self.reasoning = reasoning
        self.settings = settings or AgentSettings()
        self._today = today

    @property
    def today(self) -> date:
        return self._today or date.today()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run_command(
        self,
        conversation: Union[str, Sequence[ConversationTurn]],
        trace: Optional[AgentTrace] = None,
    ):
        """Process the latest user turn and return one ActionResult.

        Args:
            conversation: Ordered turns ending with the user's command, or a bare command string
            trace: Optional AgentTrace to record orchestration decisions into

        Returns:
            NavigateResult | TextResult | WriteConfirmResult | WriteConfirmQueueResult
        """
        trace = trace if trace is not None else AgentTrace()
        if isinstance(conversation, str):
            conversation = [ConversationTurn(role="user", content=conversation)]
        conversation = list(conversation)
        if not conversation or conversation[-1].role != "user":
            raise InputValidationError("The conversation must end with a user turn")

        query = conversation[-1].content
        trace.add("start", query[:120])

        if MOCK_PREFIX.match(query):
            return self._mock_result(query, trace)

        if needs_transfer_clarification(conversation):
            trace.add("transfer_clarification", "sale reported without a proceeds destination")
            return TextResult(message=TRANSFER_QUESTION)

        try:
            snapshot = self.store.fetch_snapshot()
            history = self.store.fetch_net_worth_history()
        except LedgerError as e:
            trace.add("error", f"store: {e}")
            return TextResult(message=f"I couldn't load your portfolio: {e}")

        try:
            return self._run(conversation, snapshot, history, trace)
        except ExternalServiceError as e:
            trace.add("error", f"reasoning: {e}")
            return TextResult(message=f"Sorry, I couldn't complete that command: {e}")

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    def _mock_result(self, query: str, trace: AgentTrace):
        command = MOCK_PREFIX.sub("", query).strip().lower()
        trace.add("mock_mode", command)
        if command.startswith("nav"):
            return NavigateResult(route="/portfolio")
        return WriteConfirmResult(
            confirmation_message=MOCK_WRITE_MESSAGE,
            pending_write=PendingWrite(kind=MOCK_WRITE, payload={}),
        )

    def _run(self, conversation: List[ConversationTurn], snapshot: PortfolioSnapshot, history, trace: AgentTrace):
        today = self.today
        engine = PortfolioAnalyticsEngine(snapshot, history=history, today=today)
        executor = ReadToolExecutor(snapshot, history=history, today=today)

        symbols = mentioned_symbols(conversation[-1].content, snapshot)
        context = engine.portfolio_context(symbols or None)
        trace.add("context", f"symbols={','.join(symbols)}" if symbols else "all positions")
        system_prompt = SYSTEM_PROMPT.format(context=_to_json(context), today=today.isoformat())

        messages = list(conversation)
        response = self._read_loop(system_prompt, messages, executor, trace)
        response = self._clarification_loop(system_prompt, messages, response, engine, trace)
        return self._resolve(response, trace)

    def _read_loop(self, system_prompt: str, messages: List[ConversationTurn],
                   executor: ReadToolExecutor, trace: AgentTrace) -> ReasoningResponse:
        max_rounds = max(1, self.settings.max_read_rounds)
        for round_number in range(1, max_rounds + 1):
            final_round = round_number == max_rounds
            trace.add("read_round", f"{round_number}/{max_rounds}" + (" (read tools withheld)" if final_round else ""))
            response = self.reasoning.respond(system_prompt, tool_schemas(include_read=not final_round), messages)

            uses = response.tool_uses
            if not uses or not all(u.name in READ_TOOL_NAMES for u in uses) or final_round:
                trace.add("read_loop_exit", ", ".join(u.name for u in uses) or "text")
                return response

            results = self._run_read_tools(executor, uses, trace)
            messages.append(ConversationTurn(
                role="assistant",
                content=(response.text + "\n" if response.text else "")
                + "Calling tools: " + "; ".join(f"{u.name}({_to_json(u.input)})" for u in uses),
            ))
            messages.append(ConversationTurn(role="user", content=f"Tool results: {_to_json(results)}"))
        return response

    def _run_read_tools(self, executor: ReadToolExecutor, uses: List[ToolUseBlock],
                        trace: AgentTrace) -> List[Dict[str, Any]]:
        def run(use: ToolUseBlock) -> Dict[str, Any]:
            try:
                return {"tool": use.name, "ok": True, "result": executor.execute(use.name, use.input)}
            except LedgerError as e:
                return {"tool": use.name, "ok": False, "error": str(e)}
            except Exception as e:
                logger.warning(f"[Command Agent] Read tool {use.name} failed: {e}", exc_info=True)
                return {"tool": use.name, "ok": False, "error": f"{type(e).__name__}: {e}"}

        # Pure reads of one immutable snapshot, safe to run side by side
        with ThreadPoolExecutor(max_workers=min(MAX_READ_WORKERS, len(uses))) as pool:
            results = list(pool.map(run, uses))

        for result in results:
            if result["ok"]:
                trace.add("read_tool", result["tool"])
            else:
                trace.add("read_tool_failed", f"{result['tool']}: {result['error']}")
        return results

    def _clarification_loop(self, system_prompt: str, messages: List[ConversationTurn],
                            response: ReasoningResponse, engine: PortfolioAnalyticsEngine,
                            trace: AgentTrace) -> ReasoningResponse:
        max_rounds = max(0, self.settings.max_clarification_rounds)
        full_context = None
        for round_number in range(1, max_rounds + 1):
            if response.tool_uses or not is_clarifying_question(response.text):
                break
            if full_context is None:
                full_context = _to_json(engine.portfolio_context())
            trace.add("clarification_round", f"{round_number}/{max_rounds}")
            messages.append(ConversationTurn(role="assistant", content=response.text))
            messages.append(ConversationTurn(
                role="user",
                content=(
                    "You already have this information. Here is my complete portfolio; use it "
                    f"instead of asking me, then carry out my request: {full_context}"
                ),
            ))
            response = self.reasoning.respond(system_prompt, tool_schemas(include_read=False), messages)
        return response

    def _resolve(self, response: ReasoningResponse, trace: AgentTrace):
        uses = response.tool_uses
        writes = [u for u in uses if u.name in WRITE_TOOL_NAMES]
        navigation = [u for u in uses if u.name == NAVIGATION_TOOL]

        if writes:
            confirmations = []
            for use in writes:
                try:
                    confirmations.append(build_write_confirmation(use.name, use.input, self.today))
                except InputValidationError as e:
                    trace.add("resolve:invalid_write", str(e))
                    return TextResult(message=f"I couldn't prepare that change. {e}")
            trace.add("resolve:write_confirm", ", ".join(c.pending_write.kind for c in confirmations))
            if len(confirmations) == 1:
                return confirmations[0]
            return WriteConfirmQueueResult(confirmations=confirmations)

        if navigation:
            try:
                route = parse_tool_input(NAVIGATION_TOOL, navigation[-1].input).route
            except InputValidationError as e:
                trace.add("resolve:invalid_navigation", str(e))
                return TextResult(message=f"I couldn't open that page. {e}")
            trace.add("resolve:navigate", route)
            return NavigateResult(route=route)

        trace.add("resolve:text")
        return TextResult(message=response.text or "I couldn't work out what to do with that. Try rephrasing.")
