from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class OrchestratorError(ValueError):
    """Base class for caller errors raised by the orchestration services."""

    code = "orchestrator_error"
    status_code = 400


class DeploymentNotFoundError(OrchestratorError):
    code = "deployment_not_found"
    status_code = 404


class DuplicateDeploymentError(OrchestratorError):
    code = "duplicate_deployment"
    status_code = 409


class ApprovalNotFoundError(OrchestratorError):
    code = "approval_not_found"
    status_code = 404


class DuplicateApprovalError(OrchestratorError):
    code = "duplicate_approval"
    status_code = 409


class ApprovalStateError(OrchestratorError):
    code = "approval_not_pending"
    status_code = 409


class ApprovalAuthorizationError(OrchestratorError, PermissionError):
    code = "approver_not_authorized"
    status_code = 403


def _error_payload(code: str, message: str, details):
    return {"code": code, "message": message, "details": details}


def register_error_handlers(app) -> None:
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        detail = exc.detail
        code = f"http_{exc.status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(code, message, details),
        )

    @app.exception_handler(OrchestratorError)
    async def orchestrator_exception_handler(request: Request, exc: OrchestratorError):
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(exc.code, str(exc), None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content=_error_payload("validation_error", "Validation error", jsonable_encoder(exc.errors())),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        return JSONResponse(
            status_code=500,
            content=_error_payload("internal_error", "Internal server error", None),
        )
