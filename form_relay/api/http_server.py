"""
HTTP server for form-relay service using FastAPI.
Accepts form submissions and exposes health checks.
"""

import logging
import time
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..domain.ports import (
    QueueBroker,
    RateLimiter,
    SubmissionProcessor,
    ValidationError,
    ValidationErrorKind,
    RateLimitExceeded,
    EnqueueError,
)
from ..domain.schema import HealthStatus, SubmissionRequest, SubmitAccepted
from ..domain.validation import MISSING_FIELD_MESSAGE
from ..telemetry.logger import MetricsLogger
from .admission import AdmissionDependency, client_address


logger = logging.getLogger(__name__)

SUBMIT_ACCEPTED_MESSAGE = "Formulario recibido con éxito"
ENQUEUE_FAILED_MESSAGE = "Error al enviar los datos. Intente de nuevo más tarde."
INTERNAL_ERROR_MESSAGE = "Error interno del servidor"
NOT_FOUND_MESSAGE = "No encontrado"

UNLIMITED_PATHS = frozenset({"/submit", "/healthz", "/readyz"})


class FormRelayAPI:
    """
    FastAPI application for form-relay service.
    Handles submission intake with rate limiting and health checks.
    """

    def __init__(
        self,
        processor: SubmissionProcessor,
        broker: QueueBroker,
        form_limiter: RateLimiter,
        general_limiter: RateLimiter,
        form_limit_message: str = "Demasiados intentos de envío de formulario. Por favor, espere 15 minutos.",
        general_limit_message: str = "Demasiadas solicitudes, por favor intente más tarde.",
        environment: str = "production",
        trust_forwarded_for: bool = False,
        forwarded_proxy_hops: int = 1,
        title: str = "Form Relay Service",
        version: str = "1.0.0"
    ):
        """
        Initialize FastAPI application.

        Args:
            processor: Submission processor (validation + enqueue)
            broker: Queue broker, used for readiness checks
            form_limiter: Limiter guarding POST /submit
            general_limiter: Limiter guarding routes other than /submit and the probes
            form_limit_message: Body of a 429 on /submit
            general_limit_message: Body of a 429 elsewhere
            environment: "production" hides exception details from clients
            trust_forwarded_for: Key limiters on X-Forwarded-For
            forwarded_proxy_hops: Trusted proxies in front of the service
            title: API title
            version: API version
        """
        self.processor = processor
        self.broker = broker
        self.environment = environment
        self.trust_forwarded_for = trust_forwarded_for
        self.forwarded_proxy_hops = forwarded_proxy_hops
        self.metrics = MetricsLogger("form_relay.metrics")

        self.app = FastAPI(
            title=title,
            version=version,
            description="HTTP API that queues form submissions for the spreadsheet",
            docs_url=None if self.is_production else "/docs",
            redoc_url=None
        )

        self.form_admission = AdmissionDependency(
            form_limiter, form_limit_message, trust_forwarded_for, forwarded_proxy_hops
        )
        self.general_admission = AdmissionDependency(
            general_limiter, general_limit_message, trust_forwarded_for, forwarded_proxy_hops
        )

        self._setup_middleware()
        self._setup_routes()
        self._setup_exception_handlers()

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def _error_detail(self, exc: Exception, production_message: str) -> str:
        return production_message if self.is_production else (str(exc) or production_message)

    @staticmethod
    def _rate_limited(exc: RateLimitExceeded) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content={"error": exc.message},
            headers={"Retry-After": str(exc.retry_after)}
        )

    def _setup_middleware(self) -> None:
        """Setup FastAPI middleware."""

        # General rate limit; /submit has its own and orchestrator probes are exempt
        @self.app.middleware("http")
        async def general_rate_limit(request: Request, call_next):
            if request.url.path not in UNLIMITED_PATHS:
                try:
                    await self.general_admission(request)
                except RateLimitExceeded as exc:
                    return self._rate_limited(exc)
            return await call_next(request)

        # Request logging middleware
        @self.app.middleware("http")
        async def log_requests(request: Request, call_next):
            start_time = time.time()
            client_ip = client_address(request, self.trust_forwarded_for, self.forwarded_proxy_hops)

            logger.debug(
                f"Request started: {request.method} {request.url.path}",
                extra={
                    "component": "http_server",
                    "method": request.method,
                    "path": request.url.path,
                    "client_ip": client_ip
                }
            )

            response = await call_next(request)

            self.metrics.log_http_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=(time.time() - start_time) * 1000,
                client_ip=client_ip
            )

            return response

    def _setup_routes(self) -> None:
        """Setup FastAPI routes."""

        @self.app.post(
            "/submit",
            response_model=SubmitAccepted,
            status_code=200,
            summary="Submit Form",
            description="Queue a {name, phone} submission for the spreadsheet"
        )
        async def submit_form(
            request: Request,
            _: str = Depends(self.form_admission)
        ) -> SubmitAccepted:
            """
            Accept a form submission.

            The body is read after the rate limit so that every request,
            well-formed or not, counts toward the client's window.
            Returns 200 once the job is queued, before it is written.
            """
            body = await self._read_json(request)
            submission = SubmissionRequest.model_validate(body if isinstance(body, dict) else {})

            handle = await self.processor.accept(submission)

            logger.info(
                f"Form queued for: {handle.job_id}",
                extra={
                    "component": "http_server",
                    "job_id": handle.job_id,
                    "entry_id": handle.entry_id
                }
            )
            return SubmitAccepted(message=SUBMIT_ACCEPTED_MESSAGE)

        @self.app.get(
            "/healthz",
            response_model=dict,
            summary="Health Check",
            description="Basic health check endpoint"
        )
        async def health_check() -> dict:
            """Basic health check - always returns OK if service is running."""
            return {
                "status": "ok",
                "service": "form-relay",
                "timestamp": time.time()
            }

        @self.app.get(
            "/readyz",
            response_model=HealthStatus,
            summary="Readiness Check",
            description="Redis connectivity and queue depth"
        )
        async def readiness_check() -> HealthStatus:
            """
            Detailed readiness check.

            Returns 503 if Redis is unreachable.
            """
            try:
                health_status = await self.broker.check_health()
            except Exception as e:
                logger.error(f"Readiness check failed: {e}")
                raise HTTPException(
                    status_code=503,
                    detail=self._error_detail(e, "Service not ready")
                ) from e

            if health_status.status != "healthy":
                logger.warning(
                    f"Service not ready: {health_status.status}",
                    extra={
                        "component": "http_server",
                        "checks": health_status.checks
                    }
                )
                raise HTTPException(
                    status_code=503,
                    detail=f"Service not ready: {health_status.status}"
                )

            return health_status

    @staticmethod
    async def _read_json(request: Request) -> Optional[Any]:
        raw = await request.body()
        if not raw:
            return None
        try:
            return await request.json()
        except ValueError as e:
            raise ValidationError(ValidationErrorKind.MISSING_FIELD, MISSING_FIELD_MESSAGE) from e

    def _setup_exception_handlers(self) -> None:
        """Setup custom exception handlers."""

        @self.app.exception_handler(ValidationError)
        async def validation_exception_handler(request: Request, exc: ValidationError):
            """Handle rejected submissions."""
            logger.warning(
                f"Validation error: {exc.kind.value}",
                extra={
                    "component": "http_server",
                    "path": request.url.path,
                    "error_kind": exc.kind.value,
                    "field": exc.field
                }
            )
            return JSONResponse(status_code=400, content={"error": exc.message})

        @self.app.exception_handler(RequestValidationError)
        async def request_validation_handler(request: Request, exc: RequestValidationError):
            """Framework-level body/param errors are client errors too."""
            logger.warning(f"Request validation error on {request.url.path}: {exc.errors()}")
            return JSONResponse(status_code=400, content={"error": MISSING_FIELD_MESSAGE})

        @self.app.exception_handler(RateLimitExceeded)
        async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
            """Handle clients over their admission limit."""
            return self._rate_limited(exc)

        @self.app.exception_handler(EnqueueError)
        async def enqueue_error_handler(request: Request, exc: EnqueueError):
            """The job was not created; the client has to resubmit."""
            logger.error(
                f"Error in {request.url.path}: {exc}",
                extra={"component": "http_server", "path": request.url.path}
            )
            return JSONResponse(
                status_code=500,
                content={"error": self._error_detail(exc, ENQUEUE_FAILED_MESSAGE)}
            )

        @self.app.exception_handler(StarletteHTTPException)
        async def http_exception_handler(request: Request, exc: StarletteHTTPException):
            """Render framework HTTP errors in the service's error shape."""
            if exc.status_code == 404:
                logger.warning(f"Route not found: {request.url.path}")
                return JSONResponse(status_code=404, content={"error": NOT_FOUND_MESSAGE})
            return JSONResponse(
                status_code=exc.status_code,
                content={"error": exc.detail},
                headers=getattr(exc, "headers", None)
            )

        @self.app.exception_handler(Exception)
        async def unhandled_exception_handler(request: Request, exc: Exception):
            """Last resort: log everything, reveal nothing in production."""
            logger.error(
                f"Unhandled error: {exc}",
                exc_info=exc,
                extra={
                    "component": "http_server",
                    "path": request.url.path,
                    "method": request.method
                }
            )
            return JSONResponse(
                status_code=500,
                content={"error": self._error_detail(exc, INTERNAL_ERROR_MESSAGE)}
            )
