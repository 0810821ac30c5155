"""Chat flows, independent of the messaging transport.

The transport hands in ``(telegram_id, text)`` or ``(telegram_id, callback
data)`` and sends back whatever ``Reply`` comes out. Callback data is
``action`` or ``action:arg``.
"""

import logging
from typing import Optional

from caret.bot import classifier
from caret.bot.messages import (
    TERMS_REQUIRED,
    WELCOME,
    Reply,
    advice_text,
    agent_summary,
    balance_text,
    confirmation_buttons,
    confirmation_text,
    error_text,
    executed_text,
    funding_text,
    proposal_buttons,
    proposal_text,
    token_list_text,
)
from caret.config import tokens as catalog
from caret.errors import AgentNotFound, CaretError, InvalidAmount, ProposalNotFoundOrExpired
from caret.exec.coordinator import NATIVE_DECIMALS, ExecutionCoordinator
from caret.llm.completion import complete_text
from caret.llm.pipeline import AdviceOutcome, TradePipeline, build_agent_prompt
from caret.onchain.eth import from_base_units
from caret.onchain.identity import actor_seed, derive_actor
from caret.store.agents import AgentRegistry, UserRegistry, check_agent_name
from caret.store.declines import DeclineMemory
from caret.trade import sessions as steps
from caret.trade.lifecycle import FAILED, TradeLifecycle
from caret.trade.sessions import SessionStore
from caret.types import Agent

logger = logging.getLogger("caret.bot")

CHAT_PREAMBLE = (
    "You are Caret, a friendly assistant for a crypto trading bot. Answer briefly. "
    "If the user wants a trade idea, tell them to pick one of their agents and describe the trade."
)

MAIN_MENU = [
    [("🤖 My Agents", "agents"), ("➕ Create Agent", "create")],
    [("📋 Tokens", "tokens")],
]


class ConversationController:
    def __init__(
        self,
        users: UserRegistry,
        agents: AgentRegistry,
        declines: DeclineMemory,
        sessions: SessionStore,
        lifecycle: TradeLifecycle,
        pipeline: TradePipeline,
        coordinator: ExecutionCoordinator,
        llm=None,
    ):
        self.users = users
        self.agents = agents
        self.declines = declines
        self.sessions = sessions
        self.lifecycle = lifecycle
        self.pipeline = pipeline
        self.coordinator = coordinator
        self.llm = llm

    # --- entry points ---

    async def handle_text(self, telegram_id: int, text: str) -> Reply:
        text = (text or "").strip()
        try:
            if text.startswith("/start"):
                await self.users.register(telegram_id)
                return Reply(WELCOME, MAIN_MENU)
            user_id = await self.users.user_id(telegram_id)
            if user_id is None:
                return Reply(TERMS_REQUIRED)
            if text.startswith("/agents"):
                return await self._list_agents(user_id)
            session = await self.sessions.get(user_id)
            if session is not None:
                return await self._continue_session(user_id, session, text)
            return await self._route(user_id, text)
        except CaretError as e:
            return Reply(error_text(e))

    async def handle_callback(self, telegram_id: int, data: str) -> Reply:
        action, _, arg = data.partition(":")
        try:
            user_id = await self.users.user_id(telegram_id)
            if user_id is None:
                return Reply(TERMS_REQUIRED)
            handler = getattr(self, f"_on_{action}", None)
            if handler is None:
                logger.warning(f"[bot] unknown callback {data!r}")
                return Reply("Unknown action.", MAIN_MENU)
            return await handler(user_id, arg)
        except CaretError as e:
            return Reply(error_text(e))

    # --- free text ---

    async def _route(self, user_id: int, text: str) -> Reply:
        c = classifier.classify(text)
        logger.info(f"[bot] classified message as {c.kind}")
        if c.kind == classifier.AGENT_SETUP:
            return await self._on_create(user_id, "")
        if c.kind in (classifier.TRADE_EXECUTION, classifier.TRADE_RECOMMENDATION):
            agents = await self.agents.list(user_id)
            if not agents:
                return Reply("You need an agent first.", [[("➕ Create Agent", "create")]])
            if len(agents) == 1:
                return await self.run_trade(user_id, agents[0], text)
            return Reply(
                "Which agent should handle this? Pick one, then send your request.",
                [[(f"🤖 {a.name}", f"trade:{a.id}")] for a in agents],
            )
        answer = await complete_text(CHAT_PREAMBLE, text, llm=self.llm)
        return Reply(answer or "🤔", MAIN_MENU)

    async def _continue_session(self, user_id: int, session: dict, text: str) -> Reply:
        step, data = session["step"], session.get("data") or {}

        if step == steps.AWAITING_AGENT_NAME:
            try:
                check_agent_name(text)
            except ValueError as e:
                return Reply(f"❌ {e}")
            if await self.agents.name_taken(user_id, text):
                return Reply("❌ You already have an agent with this name. Try another.")
            await self.sessions.start(user_id, steps.AWAITING_INSTRUCTIONS, name=text)
            return Reply(
                f"Great, **{text}**! Now describe the trading strategy for this agent "
                "(10 to 1000 characters)."
            )

        if step == steps.AWAITING_INSTRUCTIONS:
            try:
                agent = await self.agents.create(user_id, data["name"], text)
            except ValueError as e:
                return Reply(f"❌ {e}")
            await self.sessions.clear(user_id)
            logger.info(f"[bot] created agent {agent.id} for user {user_id}")
            return Reply(
                "✅ **Agent created!**\n\n" + agent_summary(agent, self._actor(user_id, agent))
                + "\n\nFund the escrow with USDT and the gas wallet with gas before trading.",
                self._agent_buttons(agent),
            )

        if step == steps.AWAITING_TRADE_PROMPT:
            await self.sessions.clear(user_id)
            agent = await self._agent(user_id, data["agent_id"])
            return await self.run_trade(user_id, agent, text)

        if step == steps.AWAITING_CUSTOM_AMOUNT:
            try:
                proposal = await self.lifecycle.submit_amount(data["proposal_id"], user_id, text)
            except InvalidAmount as e:
                return Reply(f"❌ {e}\n\nPlease enter another amount.")
            except ProposalNotFoundOrExpired as e:
                await self.sessions.clear(user_id)
                return Reply(error_text(e))
            return Reply(
                proposal_text(proposal, "✅ **Custom amount applied:**"),
                proposal_buttons(proposal),
            )

        await self.sessions.clear(user_id)
        return await self._route(user_id, text)

    async def run_trade(self, user_id: int, agent: Agent, request: str) -> Reply:
        balance: Optional[float] = None
        try:
            balance = await self.coordinator.available_balance(agent.id, user_id, "buy", "")
        except CaretError as e:
            logger.warning(f"[bot] escrow balance unavailable for agent {agent.id}: {e}")

        recent = await self.declines.recent(user_id, agent.id)
        prompt = build_agent_prompt(
            request, agent.instructions, [d.proposal_snapshot for d in recent]
        )
        outcome = await self.pipeline.run(prompt, balance)
        if isinstance(outcome, AdviceOutcome):
            return Reply(advice_text(outcome.advice), [[("📈 New Trade", f"trade:{agent.id}")]])

        proposal = await self.lifecycle.propose(outcome.decision, agent, balance)
        return Reply(proposal_text(proposal), proposal_buttons(proposal))

    # --- helpers ---

    async def _agent(self, user_id: int, agent_id) -> Agent:
        agent = await self.agents.get(int(agent_id), user_id)
        if agent is None:
            raise AgentNotFound(int(agent_id))
        return agent

    @staticmethod
    def _actor(user_id: int, agent: Agent) -> str:
        return derive_actor(actor_seed(user_id, agent.name)).address

    @staticmethod
    def _agent_buttons(agent: Agent):
        return [
            [("📈 New Trade", f"trade:{agent.id}"), ("💼 Balance", f"balance:{agent.id}")],
            [("💸 Fund", f"fund:{agent.id}"), ("🗑 Delete", f"delete:{agent.id}")],
            [("🔙 My Agents", "agents")],
        ]

    async def _list_agents(self, user_id: int) -> Reply:
        agents = await self.agents.list(user_id)
        if not agents:
            return Reply("You have no agents yet.", [[("➕ Create Agent", "create")]])
        rows = [[(f"🤖 {a.name}", f"agent:{a.id}")] for a in agents]
        rows.append([("➕ Create Agent", "create")])
        return Reply("🤖 **Your agents:**", rows)

    # --- callbacks ---

    async def _on_agents(self, user_id: int, arg: str) -> Reply:
        return await self._list_agents(user_id)

    async def _on_create(self, user_id: int, arg: str) -> Reply:
        await self.sessions.start(user_id, steps.AWAITING_AGENT_NAME)
        return Reply("Let's create an agent. What should it be called? (3 to 50 characters)")

    async def _on_agent(self, user_id: int, arg: str) -> Reply:
        agent = await self._agent(user_id, arg)
        return Reply(agent_summary(agent, self._actor(user_id, agent)), self._agent_buttons(agent))

    async def _on_trade(self, user_id: int, arg: str) -> Reply:
        agent = await self._agent(user_id, arg)
        await self.sessions.start(user_id, steps.AWAITING_TRADE_PROMPT, agent_id=agent.id)
        return Reply(f"📈 What should **{agent.name}** look at? e.g. \"buy DUCK with 20 USDT\"")

    _on_regen = _on_trade

    async def _on_balance(self, user_id: int, arg: str) -> Reply:
        agent = await self._agent(user_id, arg)
        b = await self.coordinator.balances(agent.id, user_id)
        return Reply(
            balance_text(agent.name, b, self.coordinator.native_symbol),
            [[("💸 Fund", f"fund:{agent.id}"), ("🔙 Back to Agent", f"agent:{agent.id}")]],
        )

    async def _on_fund(self, user_id: int, arg: str) -> Reply:
        agent = await self._agent(user_id, arg)
        min_gas = from_base_units(self.coordinator.min_gas_wei, NATIVE_DECIMALS)
        return Reply(
            funding_text(
                agent.name,
                agent.escrow_address,
                self._actor(user_id, agent),
                self.coordinator.native_symbol,
                min_gas,
            ),
            [[("💼 Balance", f"balance:{agent.id}"), ("🔙 Back to Agent", f"agent:{agent.id}")]],
        )

    async def _on_tokens(self, user_id: int, arg: str) -> Reply:
        configured = self.coordinator.definitions.get("tokens") or {}
        rows = [
            (t.symbol, t.name, bool((configured.get(t.symbol) or {}).get("address")))
            for t in catalog.tokens
        ]
        return Reply(token_list_text(rows), MAIN_MENU)

    async def _on_delete(self, user_id: int, arg: str) -> Reply:
        agent = await self._agent(user_id, arg)
        return Reply(
            f"⚠️ Delete **{agent.name}**? Funds left in its escrow stay on chain "
            "but the agent and its trade history are removed.",
            [[("🗑 Yes, delete", f"remove:{agent.id}"), ("🔙 Cancel", f"agent:{agent.id}")]],
        )

    async def _on_remove(self, user_id: int, arg: str) -> Reply:
        agent = await self._agent(user_id, arg)
        await self.agents.delete(agent.id, user_id)
        await self.declines.forget_agent(user_id, agent.id)
        await self.lifecycle.purge_agent(user_id, agent.id)
        logger.info(f"[bot] deleted agent {agent.id} for user {user_id}")
        return Reply(f"🗑 Agent **{agent.name}** deleted.", MAIN_MENU)

    async def _on_confirm(self, user_id: int, arg: str) -> Reply:
        c = await self.lifecycle.confirm(arg, user_id)
        return Reply(
            confirmation_text(c.proposal, c.token_units, c.funding_units),
            confirmation_buttons(c.proposal),
        )

    async def _on_custom(self, user_id: int, arg: str) -> Reply:
        await self.lifecycle.edit(arg, user_id)
        return Reply(
            "💰 **Custom Amount Input**\n\n"
            "Enter the USDT amount for this trade (e.g. 25 or 12.5)."
        )

    async def _on_accept(self, user_id: int, arg: str) -> Reply:
        outcome = await self.lifecycle.accept(arg, user_id)
        p = outcome.proposal
        if outcome.state == FAILED:
            return Reply(
                error_text(outcome.error),
                [[("🔄 Regenerate", f"regen:{p.agent_id}"), ("🔙 Back to Agent", f"agent:{p.agent_id}")]],
            )
        return Reply(executed_text(p, outcome.tx_hash), [[("🔙 Back to Agent", f"agent:{p.agent_id}")]])

    async def _on_decline(self, user_id: int, arg: str) -> Reply:
        p = await self.lifecycle.decline(arg, user_id)
        return Reply(
            "❌ Trade declined. Your agent will avoid similar suggestions.",
            [[("📈 New Trade", f"trade:{p.agent_id}"), ("🔙 Back to Agent", f"agent:{p.agent_id}")]],
        )
