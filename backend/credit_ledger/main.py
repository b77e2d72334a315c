import logging
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from credit_ledger.core.config import settings, require_jwt_secret
from credit_ledger.routes.credits import router as credits_router
from credit_ledger.services.errors import LedgerError

logger = logging.getLogger(__name__)

require_jwt_secret()

app = FastAPI(title="SynthStack Credit Ledger")
logger.info(
    "Startup config: ENV=%s LEDGER_MAX_RETRIES=%s INTERNAL_API_TOKEN=%s",
    settings.ENV,
    settings.LEDGER_MAX_RETRIES,
    "set" if settings.INTERNAL_API_TOKEN else "unset",
)

_ERROR_CODE_BY_STATUS: dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    402: "INSUFFICIENT_CREDITS",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
}


def _error_code(status_code: int) -> str:
    return _ERROR_CODE_BY_STATUS.get(int(status_code), "HTTP_ERROR")


def _error_response(status_code: int, error: dict, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": jsonable_encoder(error)},
        headers=headers,
    )


@app.exception_handler(LedgerError)
def ledger_exception_handler(request: Request, exc: LedgerError):  # noqa: ARG001
    if exc.status_code >= 500:
        logger.error("Ledger error %s: %s", exc.code, exc.message)
    return _error_response(exc.status_code, exc.to_dict())


@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException):  # noqa: ARG001
    detail = exc.detail
    message: str
    details: dict | None = None

    if isinstance(detail, str):
        message = detail
    elif isinstance(detail, dict):
        msg = detail.get("message")
        message = msg if isinstance(msg, str) and msg else "Request failed"
        det = detail.get("details")
        details = det if isinstance(det, dict) else None
    else:
        message = str(detail) if detail is not None else "Request failed"

    error: dict = {"code": _error_code(exc.status_code), "message": message}
    if details:
        error.update(details)
    return _error_response(exc.status_code, error, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError):  # noqa: ARG001
    return _error_response(
        400,
        {
            "code": "VALIDATION_ERROR",
            "message": "Invalid request payload",
            "errors": exc.errors(),
        },
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(credits_router)

@app.get("/health")
def health_check():
    return {"status": "ok"}
