import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from lta_signer.app.api.routes import router as sealing_router
from lta_signer.app.core.config import Settings

logger = logging.getLogger("lta_signer.main")


def get_app_version() -> str:
    """
    Resolve application version deterministically.

    Falls back to the source version when the package is not installed.
    """
    try:
        return version("lta-signer")
    except PackageNotFoundError:
        return "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Guarantees:
    - Fail-fast startup if configuration is invalid
    - A fixed number of signing / extension operations in flight
    - No shared verifier, trust or revocation state between requests
    """
    logger.info(
        "lta_signer_startup_begin",
        extra={
            "service": "lta-signer",
            "version": get_app_version(),
        },
    )

    # ------------------------------------------------------------------
    # Load and validate configuration (FAIL FAST)
    # ------------------------------------------------------------------
    try:
        settings = Settings()
    except Exception:
        logger.exception("invalid_signer_configuration")
        raise

    app.state.settings = settings

    # ------------------------------------------------------------------
    # Bounded operation pool
    # ------------------------------------------------------------------
    app.state.operation_slots = asyncio.Semaphore(
        settings.max_concurrent_operations
    )

    if not settings.p12_path.is_file():
        logger.warning(
            "keystore_not_found",
            extra={"p12_path": str(settings.p12_path)},
        )

    logger.info(
        "lta_signer_ready",
        extra={
            "tsa_url": str(settings.tsa_url),
            "max_concurrent_operations": settings.max_concurrent_operations,
        },
    )

    try:
        yield
    finally:
        logger.info("lta_signer_shutdown")


def create_app() -> FastAPI:
    """
    Application factory for the LTA signer service.
    """
    app = FastAPI(
        title="LTA Signer",
        description=(
            "PAdES BASELINE-LTA signing and extension of PDF documents."
        ),
        version=get_app_version(),
        docs_url="/docs",
        redoc_url=None,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    # Internal service, CORS enforced at ingress
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(sealing_router)

    @app.get(
        "/healthz",
        tags=["Monitoring"],
        summary="Liveness and readiness probe",
    )
    async def health_check():
        """
        Verifies that the runtime is alive and correctly initialized.

        NOTE:
        - Does NOT perform cryptographic operations
        - Does NOT contact the timestamp authority
        """
        return ORJSONResponse(
            content={
                "status": "ok",
                "service": "lta-signer",
                "version": app.version,
                "runtime": f"python {sys.version.split()[0]}",
                "signature_standard": "PAdES-BASELINE-LTA",
            }
        )

    return app


app = create_app()
