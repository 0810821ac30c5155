import asyncio
import logging

import typer
import uvicorn

from caret.config import settings
from caret.config.tokens import load_definitions
from caret.onchain.identity import actor_seed, derive_actor, derive_escrow_address
from caret.store.db import Database

app = typer.Typer()

# --- Logging setup ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
)
logger = logging.getLogger("caret")


def build_controller(db: Database):
    """Wire stores, pipeline, chain gateway and lifecycle into one controller."""
    from caret.bot.controller import ConversationController
    from caret.exec.coordinator import ExecutionCoordinator
    from caret.llm.pipeline import TradePipeline
    from caret.market.coingecko import PriceHistorySource
    from caret.onchain.eth import ChainGateway
    from caret.store.agents import AgentRegistry, UserRegistry
    from caret.store.declines import DeclineMemory
    from caret.store.kv import SqliteStore
    from caret.trade.lifecycle import TradeLifecycle
    from caret.trade.sessions import SessionStore

    users = UserRegistry(db)
    agents = AgentRegistry(db, derive_escrow_address)
    declines = DeclineMemory(db)
    sessions = SessionStore(SqliteStore(db, "sessions"))
    coordinator = ExecutionCoordinator(
        agents, ChainGateway(), load_definitions(settings.definitions_path)
    )
    lifecycle = TradeLifecycle(SqliteStore(db, "proposals"), declines, coordinator, sessions)
    pipeline = TradePipeline(PriceHistorySource())
    controller = ConversationController(
        users, agents, declines, sessions, lifecycle, pipeline, coordinator
    )
    return controller, lifecycle


async def sweep_loop(lifecycle, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await lifecycle.sweep()
        except Exception:
            logger.exception("[sweep] failed")


@app.command()
def run(
    port: int = typer.Option(None, help="health server port"),
    debug: bool = typer.Option(False, help="verbose logs"),
):
    """Start the Telegram bot, the health server and the expiry sweep."""
    from caret.bot.telegram import run_bot
    from caret.server import app as http_app

    if debug:
        logger.setLevel(logging.DEBUG)

    logger.info(
        f"Starting Caret (network={settings.network}, chain_id={settings.chain_id})"
    )

    async def main():
        db = Database()
        db.migrate()
        controller, lifecycle = build_controller(db)
        server = uvicorn.Server(
            uvicorn.Config(http_app, host="0.0.0.0", port=port or settings.port, log_level="info")
        )
        sweeper = asyncio.create_task(sweep_loop(lifecycle, settings.sweep_interval_sec))
        try:
            await asyncio.gather(run_bot(controller), server.serve())
        finally:
            sweeper.cancel()
            db.close()

    asyncio.run(main())


@app.command()
def derive(user_id: int, agent_name: str):
    """Print the actor and escrow addresses for a user's agent."""
    actor = derive_actor(actor_seed(user_id, agent_name))
    typer.echo(f"actor:  {actor.address}")
    typer.echo(f"escrow: {derive_escrow_address(user_id, agent_name)}")


@app.command("init-db")
def init_db(db_path: str = typer.Option(None, help="override DB_PATH")):
    """Create the database schema."""
    db = Database(db_path)
    db.migrate()
    db.close()
    typer.echo(f"database ready at {db.path}")


if __name__ == "__main__":
    app()
