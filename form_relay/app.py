"""
Main application module for form-relay service.
Composes the service graph and manages its lifecycle: startup checks,
HTTP serving, queue processing and graceful shutdown.
"""

import asyncio
import logging
import signal
import sys
from contextlib import asynccontextmanager, contextmanager
from typing import Optional

import uvicorn

from . import __version__
from .config import load_config, ensure_required_settings, AppConfig
from .domain.ports import ConfigError, QueueBroker, SheetWriter
from .domain.schema import BackoffPolicy, JobOptions
from .telemetry.logger import setup_logging, QueueEventLogger
from .infra.redis_client import RedisClient
from .infra.redis_broker import RedisStreamBroker
from .infra.rate_limiter import SlidingWindowRateLimiter
from .infra.sheets_writer import GoogleSheetsWriter
from .services.job_queue import JobQueue
from .services.submission_service import SubmissionService
from .services.submission_worker import SubmissionWorker
from .api.http_server import FormRelayAPI


logger = logging.getLogger(__name__)


class _ManagedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to FormRelayService."""

    @contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self) -> None:
        pass


class FormRelayService:
    """
    Main service class that composes all dependencies.

    The broker and sheet writer can be injected; otherwise they are built
    from configuration (Redis Streams and Google Sheets).
    """

    def __init__(
        self,
        config: AppConfig,
        broker: Optional[QueueBroker] = None,
        sheet_writer: Optional[SheetWriter] = None
    ):
        """
        Initialize service with configuration.

        Args:
            config: Application configuration
            broker: Queue broker to use instead of Redis
            sheet_writer: Sheet writer to use instead of Google Sheets
        """
        self.config = config

        # Dependencies (will be initialized in setup)
        self.redis_client: Optional[RedisClient] = None
        self.broker: Optional[QueueBroker] = broker
        self.sheet_writer: Optional[SheetWriter] = sheet_writer
        self.job_queue: Optional[JobQueue] = None
        self.worker: Optional[SubmissionWorker] = None
        self.submission_service: Optional[SubmissionService] = None
        self.api: Optional[FormRelayAPI] = None

        # Lifecycle management
        self._shutdown_event: Optional[asyncio.Event] = None
        self._shutdown_reason: Optional[str] = None
        self._exit_code = 0

    async def setup(self) -> None:
        """
        Setup all service dependencies.

        Raises:
            Exception: If setup fails
        """
        try:
            logger.info("Setting up form-relay service")

            if self.broker is None:
                self.redis_client = RedisClient(
                    url=self.config.redis.url,
                    max_connections=self.config.redis.max_connections,
                    socket_timeout=self.config.redis.socket_timeout,
                    socket_connect_timeout=self.config.redis.socket_connect_timeout,
                    health_check_interval=self.config.redis.health_check_interval
                )
                await self.redis_client.connect()

                broker = RedisStreamBroker(
                    redis_client=self.redis_client,
                    queue_name=self.config.queue.name,
                    key_prefix=self.config.redis.key_prefix
                )
                await broker.ensure_group()
                self.broker = broker

            if self.sheet_writer is None:
                self.sheet_writer = GoogleSheetsWriter(
                    spreadsheet_id=self.config.sheets.spreadsheet_id,
                    client_email=self.config.sheets.client_email,
                    private_key=self.config.sheets.private_key,
                    range_name=self.config.sheets.range,
                    timeout_seconds=self.config.sheets.timeout_seconds
                )

            queue_config = self.config.queue
            self.job_queue = JobQueue(
                broker=self.broker,
                name=queue_config.name,
                default_options=JobOptions(
                    attempts=queue_config.attempts,
                    backoff=BackoffPolicy(
                        type=queue_config.backoff_type,
                        delay_ms=queue_config.backoff_delay_ms
                    ),
                    remove_on_complete=queue_config.remove_on_complete
                ),
                lock_duration_ms=queue_config.lock_duration_ms,
                stalled_interval_ms=queue_config.stalled_interval_ms,
                max_stalled_count=queue_config.max_stalled_count,
                poll_interval_ms=queue_config.poll_interval_ms,
                consumer_id=queue_config.consumer_id,
                on_fatal=self._on_background_failure
            )
            self.job_queue.subscribe(QueueEventLogger())

            self.worker = SubmissionWorker(
                sheet_writer=self.sheet_writer,
                product_tag=self.config.sheets.product_tag
            )
            self.submission_service = SubmissionService(
                job_queue=self.job_queue,
                timezone_name=self.config.submission.timezone
            )

            limits = self.config.rate_limit
            self.api = FormRelayAPI(
                processor=self.submission_service,
                broker=self.broker,
                form_limiter=SlidingWindowRateLimiter(
                    window_seconds=limits.form.window_seconds,
                    max_requests=limits.form.max_requests,
                    name="form"
                ),
                general_limiter=SlidingWindowRateLimiter(
                    window_seconds=limits.general.window_seconds,
                    max_requests=limits.general.max_requests,
                    name="general"
                ),
                form_limit_message=limits.form.message,
                general_limit_message=limits.general.message,
                environment=self.config.app.environment,
                trust_forwarded_for=self.config.server.trust_forwarded_for,
                forwarded_proxy_hops=self.config.server.forwarded_proxy_hops,
                title="Form Relay Service",
                version=__version__
            )

            logger.info("Service setup completed successfully")

        except Exception as e:
            logger.error(f"Service setup failed: {e}")
            await self.cleanup()
            raise

    async def cleanup(self) -> None:
        """Cleanup service resources."""
        logger.info("Cleaning up service resources")

        try:
            if self.job_queue:
                await self.job_queue.close(timeout=self.config.queue.drain_timeout_seconds)

            if self.redis_client:
                await self.redis_client.close()

            logger.info("Service cleanup completed")

        except Exception as e:
            logger.error(f"Error during cleanup: {e}")

    def request_shutdown(self, reason: str, fatal: bool = False) -> None:
        """
        Ask the running service to stop.

        Args:
            reason: Logged with the shutdown
            fatal: Exit with status 1 instead of 0
        """
        if fatal:
            self._exit_code = 1

        if self._shutdown_event is None or self._shutdown_event.is_set():
            return

        self._shutdown_reason = reason
        if fatal:
            logger.critical(f"Fatal error, initiating shutdown: {reason}")
        else:
            logger.info(f"Initiating graceful shutdown: {reason}")
        self._shutdown_event.set()

    def _on_background_failure(self, error: BaseException) -> None:
        self.request_shutdown(f"background task failed: {error}", fatal=True)

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received signal {sig.name}, initiating shutdown")
        self.request_shutdown(f"signal {sig.name}")

    def _setup_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        """Setup signal handlers for graceful shutdown."""
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except NotImplementedError:
                # Windows event loops lack add_signal_handler
                signal.signal(
                    sig,
                    lambda signum, frame: loop.call_soon_threadsafe(
                        self._handle_signal, signal.Signals(signum)
                    )
                )

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                signal.signal(sig, signal.SIG_DFL)

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        error = context.get("exception")
        message = context.get("message", "unhandled exception")
        logger.error(
            f"Unhandled exception in event loop: {message}",
            exc_info=error,
            extra={"component": "app"}
        )
        self.request_shutdown(f"unhandled exception: {error or message}", fatal=True)

    def _on_server_done(self, task: asyncio.Task) -> None:
        if self._shutdown_event.is_set():
            return
        error = None if task.cancelled() else task.exception()
        self.request_shutdown(f"HTTP server stopped: {error or 'exited'}", fatal=True)

    def create_server(self) -> uvicorn.Server:
        server_config = uvicorn.Config(
            app=self.api.app,
            host=self.config.server.host,
            port=self.config.server.port,
            log_level=self.config.server.log_level,
            log_config=None,
            access_log=False,
            timeout_graceful_shutdown=self.config.server.graceful_timeout_seconds
        )
        return _ManagedServer(server_config)

    @staticmethod
    async def _serve_http(server: uvicorn.Server) -> None:
        try:
            await server.serve()
        except SystemExit as e:
            # uvicorn exits the process when it cannot bind
            raise RuntimeError(f"HTTP server failed to start (exit code {e.code})") from e

    async def run(self, server: Optional[uvicorn.Server] = None) -> int:
        """
        Serve HTTP and process the queue until shutdown is requested.

        Shutdown order: stop accepting connections, drain the queue, then
        release Redis (via cleanup).

        Returns:
            Process exit code: 0 after a signal, 1 after a fatal error
        """
        if not self.api:
            raise RuntimeError("Service not setup. Call setup() first.")

        loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._setup_signal_handlers(loop)
        previous_handler = loop.get_exception_handler()
        loop.set_exception_handler(self._handle_loop_exception)

        server = server or self.create_server()

        logger.info(
            f"Starting form-relay service on {self.config.server.host}:{self.config.server.port}",
            extra={"component": "app", "environment": self.config.app.environment}
        )

        try:
            self.job_queue.process(self.worker, concurrency=self.config.queue.concurrency)

            server_task = asyncio.create_task(self._serve_http(server), name="http-server")
            server_task.add_done_callback(self._on_server_done)

            await self._shutdown_event.wait()

            server.should_exit = True
            await asyncio.gather(server_task, return_exceptions=True)
            logger.info("HTTP server stopped")

            await self.job_queue.close(timeout=self.config.queue.drain_timeout_seconds)
            logger.info("Queue closed")

        finally:
            self._remove_signal_handlers(loop)
            loop.set_exception_handler(previous_handler)

        return self._exit_code

    @asynccontextmanager
    async def lifespan(self):
        """
        Context manager for service lifecycle.

        Handles setup and cleanup automatically.
        """
        try:
            await self.setup()
            yield self
        finally:
            await self.cleanup()


async def main() -> int:
    """
    Main entry point for the application.

    Returns:
        Process exit code
    """
    try:
        config = load_config()
    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        return 1

    setup_logging(
        level=config.logging.level,
        service_name="form-relay",
        enable_json=config.logging.json_format,
        enable_correlation=config.logging.enable_correlation
    )

    try:
        ensure_required_settings(config)
    except ConfigError as e:
        logger.error(f"Refusing to start: {e}")
        return 1

    try:
        async with FormRelayService(config).lifespan() as service:
            return await service.run()

    except Exception as e:
        logger.error(f"Service failed: {e}")
        return 1


def run() -> None:
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
