"""
Main entry point for markovbot.

Loads the configuration, restores the language models from the corpus
database, then listens on Matrix until SIGINT or SIGTERM.

Exit codes: 0 on a clean shutdown, 2 on a configuration error, 3 when the
database cannot be opened or loaded. Connection problems are never fatal;
the session keeps reconnecting.
"""

import argparse
import asyncio
import random
import signal
import sys
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from markovbot import __version__
from markovbot.config import AppConfig, load_jokes, load_settings
from markovbot.core.chain import ChainEngine, get_tokenizer
from markovbot.core.model_store import ModelStore
from markovbot.core.persistence import DatabaseManager
from markovbot.core.router import MessageRouter
from markovbot.exceptions import ConfigurationError, PersistenceError
from markovbot.integrations.backoff import ExponentialBackoff
from markovbot.integrations.matrix import MatrixCredentials, MatrixSession, RoomMembership
from markovbot.utils.logging_config import get_logger, setup_logging

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_DATABASE_ERROR = 3


class MarkovBotApp:
    """Wires the model store, the Matrix session and the router together."""

    def __init__(
        self,
        config: AppConfig,
        jokes: Tuple[str, ...] = (),
        transport_factory: Optional[Callable] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.jokes = jokes
        self.transport_factory = transport_factory
        self.rng = rng or random.Random()
        self.store: Optional[ModelStore] = None
        self.session: Optional[MatrixSession] = None
        self.router: Optional[MessageRouter] = None
        self._stop_event = asyncio.Event()

    async def setup_store(self) -> None:
        """Open the database and rebuild every scope. Raises PersistenceError."""
        chain_config = self.config.chain
        engine = ChainEngine(
            order=chain_config.order,
            max_tokens=chain_config.max_tokens,
            tokenizer=get_tokenizer(chain_config.tokenizer),
            rng=self.rng,
        )
        self.store = ModelStore(
            DatabaseManager(self.config.storage.db_path),
            engine,
            tokenizer_name=chain_config.tokenizer,
            snapshot_interval=self.config.storage.snapshot_interval,
        )
        await self.store.load()

    def setup_session(self) -> None:
        matrix = self.config.matrix
        reconnect = self.config.reconnect
        rooms = [
            RoomMembership(
                room=room.room,
                nick=self.config.nick_for(room),
                scopes=self.config.scopes_for(room),
            )
            for room in self.config.rooms
        ]
        self.session = MatrixSession(
            credentials=MatrixCredentials(
                homeserver=matrix.homeserver,
                user_id=matrix.user_id,
                password=matrix.password,
                device_name=matrix.device_name,
            ),
            rooms=rooms,
            backoff=ExponentialBackoff(reconnect.initial_delay, reconnect.max_delay, reconnect.multiplier),
            transport_factory=self.transport_factory,
            rejoin_interval=reconnect.rejoin_interval,
            auth_alert_threshold=reconnect.auth_alert_threshold,
            store_path=Path(matrix.store_path),
            sync_timeout_ms=matrix.sync_timeout_ms,
            request_timeout=matrix.request_timeout,
            accept_invites=matrix.accept_invites,
        )

    def setup_router(self) -> None:
        response = self.config.response
        self.router = MessageRouter(
            session=self.session,
            store=self.store,
            policy_config=self.config.policy_config(self.jokes),
            mention_pattern=response.mention_pattern,
            learn_from_direct=response.learn_from_direct,
            default_nick=self.config.default_nick,
            worker_count=self.config.worker_count,
            queue_size=self.config.queue_size,
            rng=self.rng,
        )

    def request_stop(self) -> None:
        self._stop_event.set()

    def _install_signal_handlers(self) -> List[int]:
        loop = asyncio.get_running_loop()
        installed = []
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.request_stop)
            except (NotImplementedError, RuntimeError):
                continue
            installed.append(signum)
        return installed

    async def _receive_loop(self) -> None:
        async for event in self.session.receive():
            try:
                await self.router.route(event)
            except Exception as e:
                logger.error(
                    "route_failed", room_id=event.room_id, sender=event.sender, error=str(e), exc_info=True
                )

    async def run(self) -> int:
        """Run until stopped. Returns the process exit code."""
        try:
            await self.setup_store()
        except PersistenceError as e:
            logger.error("database_unavailable", db_path=self.config.storage.db_path, error=str(e))
            return EXIT_DATABASE_ERROR

        self.setup_session()
        self.setup_router()
        installed = self._install_signal_handlers()

        logger.info(
            "markovbot_started",
            version=__version__,
            user_id=self.config.matrix.user_id,
            rooms=[room.room for room in self.config.rooms],
            scopes=len(self.store.scopes()),
        )

        self.router.start()
        receive_task = asyncio.create_task(self._receive_loop(), name="matrix-receive")
        stop_task = asyncio.create_task(self._stop_event.wait(), name="stop-signal")
        try:
            done, _ = await asyncio.wait({receive_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            if receive_task in done and receive_task.exception() is not None:
                logger.error("receive_loop_failed", error=str(receive_task.exception()))
        finally:
            loop = asyncio.get_running_loop()
            for signum in installed:
                loop.remove_signal_handler(signum)
            await self.shutdown(receive_task, stop_task)

        return EXIT_OK

    async def shutdown(self, *tasks: asyncio.Task) -> None:
        logger.info("markovbot_stopping")
        for task in tasks:
            task.cancel()
        # A failed task must not skip the cleanup below
        await asyncio.gather(*tasks, return_exceptions=True)

        if self.session is not None:
            await self.session.close()
        if self.router is not None:
            await self.router.stop()
        if self.store is not None:
            try:
                await self.store.close()
            except (SQLAlchemyError, OSError) as e:
                logger.error("database_close_failed", error=str(e))
        logger.info("markovbot_stopped")


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="markovbot",
        description="markovbot - a Matrix bot that learns how its rooms talk",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  markovbot                             # ~/.config/markovbot.toml, then /etc/markovbot/markovbot.toml
  markovbot ./markovbot.toml            # explicit config file
  markovbot --log-level DEBUG
        """
    )

    parser.add_argument(
        "config",
        nargs="?",
        help="Path to a TOML config file"
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override log level from configuration"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    return parser.parse_args(argv)


async def main(argv: Optional[List[str]] = None) -> int:
    """Main application entry point. Returns the exit code."""
    args = parse_arguments(argv)

    try:
        config = load_settings(args.config)
        jokes = load_jokes(config.response.jokes_file)
        if args.log_level:
            config.log_level = args.log_level
        setup_logging(config.log_level, config.log_format, config.log_file)
    except (ConfigurationError, OSError) as e:
        print(f"markovbot: configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    app = MarkovBotApp(config, jokes)
    return await app.run()


def run() -> None:
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
