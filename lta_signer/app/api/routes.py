import logging
import uuid
from typing import Annotated, Awaitable, Callable, Optional

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    Header,
    HTTPException,
    Request,
    UploadFile,
    status,
)
from fastapi.responses import ORJSONResponse, PlainTextResponse, Response
from pydantic import ValidationError

from lta_signer.app.core.config import Settings
from lta_signer.app.core.errors import SealingError
from lta_signer.app.services import extension, signing
from lta_signer.app.services.identity import KeystoreIdentity
from lta_signer.app.services.parameters import SignatureLevel

logger = logging.getLogger("lta_signer.api")

router = APIRouter(tags=["Archival Sealing"])

_PDF_RESPONSES = {
    200: {
        "content": {"application/pdf": {}},
        "description": "PAdES BASELINE-LTA PDF",
    },
    400: {"description": "Missing or invalid input"},
    413: {"description": "Payload too large"},
    422: {"description": "Trust or container failure"},
    500: {"description": "Signing failure"},
}

# =============================================================================
# Dependency providers
# =============================================================================

def get_correlation_id(
    x_correlation_id: Annotated[
        Optional[str],
        Header(description="Audit trace ID"),
    ] = None,
) -> str:
    """Extract or generate a correlation ID for end-to-end traceability."""
    if x_correlation_id and len(x_correlation_id) > 128:
        return str(uuid.uuid4())
    return x_correlation_id or str(uuid.uuid4())


def get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    if settings is None:
        raise RuntimeError("settings not initialized")
    return settings


def keystore_identity(settings: Settings) -> KeystoreIdentity:
    return KeystoreIdentity(
        path=settings.p12_path,
        password=settings.p12_password.get_secret_value(),
    )


# =============================================================================
# Shared request handling
# =============================================================================

def _check_size(payload: bytes, settings: Settings, correlation_id: str):
    if len(payload) > settings.max_pdf_size_mb * 1024 * 1024:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds the {settings.max_pdf_size_mb}MB limit.",
            headers={"X-Correlation-ID": correlation_id},
        )


async def _read_upload(
    upload: Optional[UploadFile],
    settings: Settings,
    correlation_id: str,
) -> bytes:
    if upload is None:
        return b""
    max_bytes = settings.max_pdf_size_mb * 1024 * 1024
    try:
        payload = await upload.read(max_bytes + 1)
    finally:
        await upload.close()
    _check_size(payload, settings, correlation_id)
    return payload


async def _run_operation(
    request: Request,
    *,
    operation: str,
    correlation_id: str,
    filename: str,
    call: Callable[[], Awaitable[bytes]],
) -> Response:
    """
    Run one sealing operation inside the bounded operation pool and map
    its outcome to an HTTP response.
    """
    logger.info(
        "operation_received",
        extra={"operation": operation, "trace_id": correlation_id},
    )

    try:
        async with request.app.state.operation_slots:
            result = await call()

    except SealingError as exc:
        logger.warning(
            "operation_rejected",
            extra={
                "operation": operation,
                "trace_id": correlation_id,
                "error_type": type(exc).__name__,
                "error_code": exc.code,
            },
        )
        return ORJSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message, "code": exc.code},
            headers={"X-Correlation-ID": correlation_id},
        )

    except ValidationError as exc:
        # Caller-supplied operation settings, e.g. a malformed tsa_url
        logger.warning(
            "operation_config_rejected",
            extra={
                "operation": operation,
                "trace_id": correlation_id,
                "error_count": exc.error_count(),
            },
        )
        return ORJSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "Invalid operation parameters",
                "code": "invalid_input",
            },
            headers={"X-Correlation-ID": correlation_id},
        )

    except Exception as exc:
        logger.exception(
            "operation_failure",
            extra={
                "operation": operation,
                "trace_id": correlation_id,
                "error_type": type(exc).__name__,
            },
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Archival signing failed.",
            headers={"X-Correlation-ID": correlation_id},
        ) from exc

    logger.info(
        "operation_success",
        extra={
            "operation": operation,
            "trace_id": correlation_id,
            "signature_level": SignatureLevel.LTA.value,
        },
    )
    return Response(
        content=result,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Correlation-ID": correlation_id,
            "X-Signature-Standard": SignatureLevel.LTA.value,
        },
    )


# =============================================================================
# GET /health
# =============================================================================

@router.get("/health", response_class=PlainTextResponse, tags=["Monitoring"])
async def health() -> str:
    return "ok"


# =============================================================================
# Raw-body endpoints (keystore identity)
# =============================================================================

@router.post(
    "/api/sign",
    summary="Sign a PDF directly to PAdES BASELINE-LTA",
    response_class=Response,
    responses=_PDF_RESPONSES,
)
async def sign(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
    correlation_id: Annotated[str, Depends(get_correlation_id)],
) -> Response:
    """
    Sign the raw request body with the configured keystore.

    One signature, one archive timestamp.
    """
    body = await request.body()
    _check_size(body, settings, correlation_id)

    return await _run_operation(
        request,
        operation="sign",
        correlation_id=correlation_id,
        filename="signed.pdf",
        call=lambda: signing.sign_pdf_bytes(
            body,
            keystore_identity(settings),
            config=settings.operation_config(),
            trace_id=correlation_id,
        ),
    )


@router.post(
    "/api/extend",
    summary="Extend a signed PDF to PAdES BASELINE-LTA",
    response_class=Response,
    responses=_PDF_RESPONSES,
)
async def extend(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
    correlation_id: Annotated[str, Depends(get_correlation_id)],
) -> Response:
    """
    Add validation data and one archive timestamp to the signed PDF in
    the request body. The configured keystore chain seeds the verifier.
    """
    body = await request.body()
    _check_size(body, settings, correlation_id)

    return await _run_operation(
        request,
        operation="extend",
        correlation_id=correlation_id,
        filename="extended_lta.pdf",
        call=lambda: extension.extend_pdf_bytes(
            body,
            keystore_identity(settings),
            config=settings.operation_config(),
            trace_id=correlation_id,
        ),
    )


# =============================================================================
# Multipart endpoints (caller-supplied PEM identity)
# =============================================================================

@router.post(
    "/api/sign-with-cert",
    summary="Sign a PDF to PAdES BASELINE-LTA with a supplied certificate",
    response_class=Response,
    responses=_PDF_RESPONSES,
)
async def sign_with_cert(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
    correlation_id: Annotated[str, Depends(get_correlation_id)],
    pdf: Annotated[Optional[UploadFile], File()] = None,
    certificate_pem: Annotated[Optional[str], Form()] = None,
    private_key_pem: Annotated[Optional[str], Form()] = None,
    tsa_url: Annotated[Optional[str], Form()] = None,
) -> Response:
    payload = await _read_upload(pdf, settings, correlation_id)

    return await _run_operation(
        request,
        operation="sign_with_cert",
        correlation_id=correlation_id,
        filename="signed.pdf",
        call=lambda: signing.sign_pdf_with_pem(
            payload,
            certificate_pem or "",
            private_key_pem or "",
            config=settings.operation_config(tsa_url),
            trace_id=correlation_id,
        ),
    )


@router.post(
    "/api/extend-with-cert",
    summary="Extend a signed PDF to PAdES BASELINE-LTA with a supplied chain",
    response_class=Response,
    responses=_PDF_RESPONSES,
)
async def extend_with_cert(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
    correlation_id: Annotated[str, Depends(get_correlation_id)],
    pdf: Annotated[Optional[UploadFile], File()] = None,
    certificate_pem: Annotated[Optional[str], Form()] = None,
    private_key_pem: Annotated[Optional[str], Form()] = None,
    tsa_url: Annotated[Optional[str], Form()] = None,
) -> Response:
    payload = await _read_upload(pdf, settings, correlation_id)

    return await _run_operation(
        request,
        operation="extend_with_cert",
        correlation_id=correlation_id,
        filename="extended_lta.pdf",
        call=lambda: extension.extend_pdf_with_pem(
            payload,
            certificate_pem or "",
            private_key_pem or "",
            config=settings.operation_config(tsa_url),
            trace_id=correlation_id,
        ),
    )
