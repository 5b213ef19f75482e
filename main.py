"""Main entry point for the Subm renewal engine."""
import asyncio
import logging
import signal
import sys
from typing import Optional

from aiohttp import web

from bot.webhook import EngineServices, create_app
from core.config import load_config
from core.database import init_database
from core.logger import setup_logging
from core.scheduler import EngineScheduler
from services.callbacks import CallbackService
from services.dispatcher import ReminderDispatcher
from services.exchange_rate import ExchangeRateClient, ExchangeRateRefresher, ExchangeRateService
from services.keystore import KeyVault
from services.mailer import EmailNotifier
from services.telegram import TelegramNotifier


class SubmEngine:
    """Main engine application."""

    def __init__(self):
        """Initialize engine application."""
        self.config = load_config()

        # Setup logging first, before any other loggers are created
        setup_logging(self.config.logging)
        self.logger = logging.getLogger(__name__)

        self.db = None
        self.telegram: Optional[TelegramNotifier] = None
        self.mailer: Optional[EmailNotifier] = None
        self.rate_client: Optional[ExchangeRateClient] = None
        self.scheduler: Optional[EngineScheduler] = None
        self.runner: Optional[web.AppRunner] = None

        self.shutdown_event = asyncio.Event()
        self._shutting_down = False

    async def setup(self):
        """Setup engine components."""
        username = self.config.admin.username
        self.logger.info(f"Starting Subm engine for {username}...")

        self.logger.info("Initializing database...")
        self.db = await init_database(self.config.database.path)

        self.telegram = TelegramNotifier(debug=self.config.notifications.debug_telegram)
        self.mailer = EmailNotifier(self.config.smtp)
        if not self.mailer.configured:
            self.logger.info("SMTP not configured, e-mail reminders will fail")

        self.logger.info("Initializing exchange rate client...")
        self.rate_client = ExchangeRateClient(self.config.exchange_rate)
        await self.rate_client.start()

        vault = KeyVault(self.db)
        rate_service = ExchangeRateService(self.db, vault, self.rate_client)
        dispatcher = ReminderDispatcher(
            self.db,
            username,
            self.telegram,
            self.mailer,
            self.config.notifications
        )
        callbacks = CallbackService(self.db, username, self.telegram)

        self.logger.info("Starting HTTP server...")
        app = create_app(
            EngineServices(
                username=username,
                callbacks=callbacks,
                dispatcher=dispatcher,
                exchange_rates=rate_service,
                vault=vault,
            ),
            api_token=self.config.server.api_token
        )
        self.runner = web.AppRunner(app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.config.server.host, self.config.server.port)
        await site.start()
        self.logger.info(f"Listening on {self.config.server.host}:{self.config.server.port}")

        self.logger.info("Initializing scheduler...")
        self.scheduler = EngineScheduler(
            dispatcher,
            ExchangeRateRefresher(
                rate_service,
                self.db,
                username,
                default_timezone=self.config.exchange_rate.default_timezone
            ),
            reminder_interval=self.config.notifications.interval_seconds,
            rate_interval=self.config.exchange_rate.poll_interval_seconds
        )
        await self.scheduler.start()

        self.logger.info("Engine setup completed successfully!")

    async def start(self):
        """Start the engine and run until a signal arrives."""
        try:
            await self.setup()

            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self._on_signal, sig)

            self.logger.info("Engine is running. Press Ctrl+C to stop.")
            await self.shutdown_event.wait()

        except Exception as e:
            self.logger.error(f"Error starting engine: {e}", exc_info=True)
        finally:
            await self.shutdown()

    def _on_signal(self, signum):
        self.logger.warning(f"Received signal {signum}")
        self.shutdown_event.set()

    async def shutdown(self):
        """Graceful shutdown."""
        if self._shutting_down:
            return
        self._shutting_down = True

        self.logger.info("Shutting down engine...")

        try:
            if self.scheduler:
                self.logger.info("Stopping scheduler...")
                try:
                    await asyncio.wait_for(self.scheduler.stop(), timeout=1.0)
                except asyncio.TimeoutError:
                    self.logger.warning("Scheduler stop timeout")

            if self.runner:
                await self.runner.cleanup()

            # Close all sessions concurrently with short timeout
            close_tasks = []

            if self.telegram:
                close_tasks.append(self.telegram.close())

            if self.rate_client:
                close_tasks.append(self.rate_client.close())

            if self.db:
                close_tasks.append(self.db.disconnect())

            if close_tasks:
                self.logger.info(f"Closing {len(close_tasks)} connections...")
                try:
                    await asyncio.wait_for(
                        asyncio.gather(*close_tasks, return_exceptions=True),
                        timeout=2.0
                    )
                except asyncio.TimeoutError:
                    self.logger.warning("Connection close timeout")

            self.logger.info("Shutdown complete")

        except Exception as e:
            self.logger.error(f"Error during shutdown: {e}", exc_info=True)


async def main():
    """Main entry point."""
    engine = SubmEngine()
    try:
        await engine.start()
    except Exception as e:
        logging.error(f"Fatal error in main: {e}", exc_info=True)
        raise


if __name__ == '__main__':
    exit_code = 0
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nEngine stopped by user")
    except Exception as e:
        print(f"Fatal error: {e}")
        exit_code = 1
    finally:
        sys.exit(exit_code)
