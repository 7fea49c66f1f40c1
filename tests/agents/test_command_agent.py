"""
Tests for the command agent state machine with a scripted reasoning service.
"""

import pytest
from conftest import text_response, tool_response

from mne_agents.command_agent import (
    TRANSFER_QUESTION, CommandAgent, is_clarifying_question, mentioned_symbols, needs_transfer_clarification
)
from mne_agents.config import AgentSettings
from mne_agents.errors import ExternalServiceError, InputValidationError, WriteAlreadyAttemptedError
from mne_agents.tools.tool_catalog import READ_TOOL_NAMES
from mne_agents.types.action_types import (
    AgentTrace, NavigateResult, TextResult, WriteConfirmQueueResult, WriteConfirmResult
)
from mne_agents.types.portfolio_types import ConversationTurn


def _turns(*pairs):
    return [ConversationTurn(role=role, content=content) for role, content in pairs]


@pytest.fixture
def portfolio(store):
    store.add_stock("AAPL", price=190, lots=[("2024-01-01", 10, 150)])
    store.add_stock("MSFT", price=400, lots=[("2024-01-01", 5, 300)], location="Schwab")
    store.add_cash("Checking", 2500)
    return store


@pytest.fixture
def make_agent(portfolio, scripted_reasoning, today):
    def _build(*responses, **settings):
        reasoning = scripted_reasoning(*responses)
        agent = CommandAgent(portfolio, reasoning, AgentSettings(**settings), today=today)
        return agent, reasoning
    return _build


class TestTransferClarification:
    """Reported sales without a proceeds destination are answered locally."""

    def test_sale_without_transfer_asks_about_proceeds(self, make_agent):
        agent, reasoning = make_agent()
        trace = AgentTrace()

        result = agent.run_command("I sold 5 shares of AAPL", trace=trace)

        assert isinstance(result, TextResult)
        assert result.message == TRANSFER_QUESTION
        assert reasoning.calls == []
        assert "transfer_clarification" in trace.labels

    def test_reply_to_transfer_question_goes_to_model(self, make_agent):
        agent, reasoning = make_agent(tool_response(("sell_shares", {
            "symbol": "AAPL", "sale_price": 200, "purchase_date": "2024-01-01", "count": 5,
        })))
        conversation = _turns(
            ("user", "I sold 5 shares of AAPL at 200 from the 2024-01-01 lot"),
            ("assistant", TRANSFER_QUESTION),
            ("user", "I sold them and kept nothing aside"),
        )

        result = agent.run_command(conversation)

        assert isinstance(result, WriteConfirmResult)
        assert len(reasoning.calls) == 1

    @pytest.mark.parametrize("text", [
        "I sold 5 AAPL and moved the proceeds to Checking",
        "sold 5 AAPL, transferred to savings",
        "I sold 5 AAPL, no transfer",
        "What if I sold half my AAPL?",
        "Should I sell MSFT",
        "Add 10 AAPL at 180",
        "Which AAPL lots should I sell for tax-loss harvesting",
        "Show me the tax impact of selling 10 AAPL",
        "Recommend what to sell to raise my cash buffer",
        "Suggest selling 5 MSFT to rebalance",
        "I sold 10 AAPL and kept the cash in Fidelity",
        "Sold 3 MSFT, left it in the brokerage account",
    ])
    def test_no_clarification_needed(self, text):
        assert needs_transfer_clarification(_turns(("user", text))) is False

    @pytest.mark.parametrize("text", [
        "I sold 5 shares of AAPL",
        "Sell 10 AAPL from the 2024-01-01 lot at 200",
        "sold all my MSFT at 410 today",
        "I'm selling 4 AAPL at 195",
    ])
    def test_reported_or_commanded_sale_needs_clarification(self, text):
        assert needs_transfer_clarification(_turns(("user", text))) is True

    @pytest.mark.parametrize("text", [
        "Which AAPL lots should I sell for tax-loss harvesting",
        "Show me the tax impact of selling 10 AAPL",
        "Recommend what to sell to raise my cash buffer",
    ])
    def test_read_requests_about_selling_reach_the_model(self, make_agent, text):
        agent, reasoning = make_agent(text_response("Here is what I found."))

        result = agent.run_command(text)

        assert isinstance(result, TextResult)
        assert result.message == "Here is what I found."
        assert len(reasoning.calls) == 1


class TestReadLoop:
    def test_read_results_feed_next_round(self, make_agent):
        agent, reasoning = make_agent(
            tool_response(("get_portfolio_summary", {}), ("get_exposure_breakdown", {"dimension": "ticker"})),
            text_response("Your net worth is $6,400.00."),
        )

        result = agent.run_command("what's my net worth split by ticker")

        assert result.message == "Your net worth is $6,400.00."
        assert len(reasoning.calls) == 2
        follow_up = reasoning.calls[1]["messages"]
        assert follow_up[-2].content.startswith("Calling tools: get_portfolio_summary({})")
        assert follow_up[-1].content.startswith("Tool results: ")
        assert '"net_worth":6400.0' in follow_up[-1].content

    def test_read_tools_withheld_on_final_round(self, make_agent):
        agent, reasoning = make_agent(
            tool_response(("get_positions", {})),
            tool_response(("get_transactions", {})),
            text_response("Done looking."),
        )
        trace = AgentTrace()

        result = agent.run_command("tell me everything", trace=trace)

        assert result.message == "Done looking."
        assert len(reasoning.calls) == 3
        assert READ_TOOL_NAMES <= set(reasoning.calls[0]["tool_names"])
        assert set(reasoning.calls[2]["tool_names"]).isdisjoint(READ_TOOL_NAMES)
        assert trace.labels.count("read_round") == 3

    def test_read_call_on_final_round_is_not_executed(self, make_agent):
        agent, reasoning = make_agent(
            tool_response(("get_positions", {})),
            tool_response(("get_positions", {})),
            tool_response(("get_positions", {})),
        )
        result = agent.run_command("loop forever")

        assert len(reasoning.calls) == 3
        assert isinstance(result, TextResult)
        assert result.message == "I couldn't work out what to do with that. Try rephrasing."

    def test_failed_read_tool_is_reported_to_model(self, make_agent):
        agent, reasoning = make_agent(
            tool_response(("get_exposure_breakdown", {"dimension": "sector"})),
            text_response("I can't break it down that way."),
        )
        trace = AgentTrace()

        agent.run_command("exposure by sector", trace=trace)

        assert '"ok":false' in reasoning.calls[1]["messages"][-1].content
        assert "read_tool_failed" in trace.labels

    def test_context_filtered_by_mentioned_symbols(self, make_agent):
        agent, reasoning = make_agent(text_response("AAPL is up."))
        agent.run_command("how is AAPL doing")

        prompt = reasoning.calls[0]["system_prompt"]
        assert '"symbol":"AAPL","location":"Fidelity"' in prompt
        assert '"symbol":"MSFT","location":"Schwab"' not in prompt
        assert "Today's date is 2025-06-15" in prompt


class TestClarificationLoop:
    def test_clarifying_question_is_retried_with_full_context(self, make_agent):
        agent, reasoning = make_agent(
            text_response("How many shares of MSFT do you hold?"),
            tool_response(("navigate_to", {"route": "/portfolio"})),
        )
        trace = AgentTrace()

        result = agent.run_command("show my holdings", trace=trace)

        assert result == NavigateResult(route="/portfolio")
        second = reasoning.calls[1]
        assert set(second["tool_names"]).isdisjoint(READ_TOOL_NAMES)
        assert "complete portfolio" in second["messages"][-1].content
        assert '"symbol":"MSFT"' in second["messages"][-1].content
        assert trace.labels.count("clarification_round") == 1

    def test_clarification_rounds_are_capped(self, make_agent):
        question = text_response("Which account holds your AAPL shares?")
        agent, reasoning = make_agent(question, question, question)

        result = agent.run_command("do the thing")

        assert len(reasoning.calls) == 3
        assert result.message == "Which account holds your AAPL shares?"

    @pytest.mark.parametrize("text,expected", [
        ("How many shares of AAPL do you own?", True),
        ("Could you confirm the purchase price?", True),
        ("Which account should the proceeds go to?", False),
        ("How are you today?", False),
        ("You hold 10 shares.", False),
    ])
    def test_is_clarifying_question(self, text, expected):
        assert is_clarifying_question(text) is expected


class TestResolve:
    def test_single_write(self, make_agent):
        agent, _ = make_agent(tool_response(("add_ticker_to_watchlist", {"symbol": "nvda"})))
        result = agent.run_command("watch nvidia")

        assert isinstance(result, WriteConfirmResult)
        assert result.confirmation_message == "Add NVDA to watchlist"

    def test_several_writes_become_a_queue(self, make_agent, portfolio, today):
        agent, _ = make_agent(tool_response(
            ("add_ticker_to_watchlist", {"symbol": "NVDA"}),
            ("update_asset_value", {"asset_name": "Checking", "price": 3000}),
        ))
        result = agent.run_command("watch NVDA and set checking to 3000")

        assert isinstance(result, WriteConfirmQueueResult)
        assert [c.pending_write.kind for c in result.confirmations] == [
            "add_ticker_to_watchlist", "update_asset_value"
        ]
        assert portfolio.write_log == []

        result.confirmations[1].execute(portfolio, today=today)
        assert [a.price for a in portfolio.fetch_snapshot().assets if a.name == "Checking"] == [3000]

    def test_write_takes_precedence_over_navigation(self, make_agent):
        agent, _ = make_agent(tool_response(
            ("navigate_to", {"route": "/watchlist"}),
            ("add_ticker_to_watchlist", {"symbol": "NVDA"}),
        ))
        assert isinstance(agent.run_command("add NVDA and show my watchlist"), WriteConfirmResult)

    def test_navigation(self, make_agent):
        agent, _ = make_agent(tool_response(("navigate_to", {"route": "/tax"})))
        assert agent.run_command("open the tax page") == NavigateResult(route="/tax")

    def test_invalid_navigation(self, make_agent):
        agent, _ = make_agent(tool_response(("navigate_to", {"route": "/admin"})))
        result = agent.run_command("open admin")
        assert result.message.startswith("I couldn't open that page.")

    def test_invalid_write_becomes_text(self, make_agent):
        agent, _ = make_agent(tool_response(("add_stock_transaction", {"symbol": "AAPL", "count": -1})))
        trace = AgentTrace()
        result = agent.run_command("add some apple", trace=trace)

        assert isinstance(result, TextResult)
        assert result.message.startswith("I couldn't prepare that change. Invalid input for add_stock_transaction")
        assert "resolve:invalid_write" in trace.labels


class TestFailuresAndModes:
    def test_mock_navigation(self, make_agent):
        agent, reasoning = make_agent()
        assert agent.run_command("mock: navigate") == NavigateResult(route="/portfolio")
        assert reasoning.calls == []

    def test_mock_write_executes_once_without_changes(self, make_agent, portfolio):
        agent, _ = make_agent()
        result = agent.run_command("MOCK: add shares")

        assert isinstance(result, WriteConfirmResult)
        assert result.execute(portfolio) == "[MOCK] No changes were made."
        assert portfolio.write_log == []
        with pytest.raises(WriteAlreadyAttemptedError):
            result.execute(portfolio)

    def test_reasoning_failure_becomes_text(self, make_agent):
        agent, _ = make_agent(ExternalServiceError("The reasoning service is unavailable: timeout"))
        result = agent.run_command("what's my net worth")
        assert result.message == (
            "Sorry, I couldn't complete that command: The reasoning service is unavailable: timeout"
        )

    def test_store_failure_becomes_text(self, make_agent, portfolio):
        portfolio.fail_on.add(("fetch", "assets"))
        agent, reasoning = make_agent()

        result = agent.run_command("what's my net worth")

        assert result.message.startswith("I couldn't load your portfolio:")
        assert reasoning.calls == []

    def test_conversation_must_end_with_user(self, make_agent):
        agent, _ = make_agent()
        with pytest.raises(InputValidationError):
            agent.run_command(_turns(("user", "hi"), ("assistant", "hello")))


class TestMentionedSymbols:
    def test_short_lowercase_words_are_not_symbols(self, store):
        store.add_ticker("ON")
        store.add_ticker("AAPL")
        snapshot = store.fetch_snapshot()

        assert mentioned_symbols("buy ON on monday", snapshot) == ["ON"]
        assert mentioned_symbols("sell it on friday", snapshot) == []
        assert mentioned_symbols("aapl and AAPL", snapshot) == ["AAPL"]
