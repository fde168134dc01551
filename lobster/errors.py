import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse

logger = logging.getLogger(__name__)


_MESSAGES = {
    # vm guard
    "vm_not_ready": "VM is not ready yet",
    "vm_suspended_auto": "VM is suspended due to negative credit, make a payment first",
    "vm_suspended_manual": "VM is suspended",
    "vm_has_pending_task": "VM has pending task, please try again later",
    "vm_provisioning": "VM is still being provisioned",
    "vm_not_found": "No virtual machine with that ID",
    "operation_unsupported": "operation not supported",
    "insufficient_credit": "insufficient credit (make a payment from the Billing tab)",
    "try_again_later": "too many attempts, please try again later",
    # vm creation and updates
    "invalid_account": "invalid user account",
    "invalid_name": "name cannot be empty",
    "name_too_long": "name cannot exceed {max} characters",
    "name_invalid_characters": "provided name contains invalid characters",
    "vm_limit_exceeded": (
        "you have exceeded your current VM count limit, please contact support to have your limit increased"
    ),
    "invalid_image": "specified image does not exist",
    "image_not_ready": "specified image is not ready",
    "invalid_plan": "no such plan",
    "plan_in_use": "plan is in use by existing virtual machines",
    "invalid_region": "invalid region",
    "snapshot_name_required": "snapshot name cannot be empty",
    "max_addresses": "this VM already has the maximum of {max} IP addresses",
    "addresses_disabled": "IP address management is disabled",
    "region_plans_unsupported": "region does not support plan listing",
    "region_images_unsupported": "region does not support image management",
    "provider_error": "the operation failed, please try again later or contact support",
    # authentication
    "incorrect_username_or_password": "incorrect username or password",
    "username_length": "username must be between {min} and {max} characters",
    "username_invalid_characters": "username contains invalid characters",
    "password_length": "password must be between {min} and {max} characters",
    "password_mismatch": "passwords do not match",
    "username_taken": "username is already in use",
    "email_taken": "email address is already in use",
    "incorrect_password": "incorrect password",
    "pwreset_email_required": "an email address is required to reset the password",
    "incorrect_username_email": "incorrect username or email address",
    "pwreset_outstanding": "a password reset request is already outstanding",
    "incorrect_token": "invalid or expired token",
    "must_terms": "you must accept the terms of service",
    "already_logged_in": "you are already logged in",
    "password_empty": "password cannot be empty",
    "user_not_found": "no user with that ID",
    "invalid_token_form": "invalid or missing form token",
    # api keys
    "invalid_restriction": "invalid restriction: {detail}",
    "restriction_too_long": "restriction cannot exceed {max} characters",
    "invalid_id": "invalid ID",
    # billing
    "amount_between": "amount must be between {min} and {max}",
    "invalid_payment_method": "invalid payment method",
    "invalid_amount": "invalid amount",
}


class LobsterError(ValueError):
    """A user-facing error with a stable code and a rendered message."""

    status_code = 400

    def __init__(self, code: str, message: str | None = None, **params):
        self.code = code
        self.params = params
        if message is None:
            template = _MESSAGES.get(code, code.replace("_", " "))
            message = template.format(**params) if params else template
        self.message = message
        super().__init__(message)


class NotFoundError(LobsterError):
    status_code = 404


class ProviderError(Exception):
    """A driver call failed; carries the VM context for admin reports."""

    def __init__(self, operation: str, cause: Exception, vm_id: int | None = None, identification: str | None = None):
        self.operation = operation
        self.cause = cause
        self.vm_id = vm_id
        self.identification = identification
        super().__init__(f"{operation} failed (vm_id={vm_id}, identification={identification}): {cause}")


def _error_payload(code: str, message: str, details):
    return {"code": code, "message": message, "details": details}


def register_error_handlers(app) -> None:
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        # Preserve redirect responses (e.g. 303 from the session CSRF check)
        if 300 <= exc.status_code < 400 and exc.headers:
            location = exc.headers.get("Location")
            if location:
                return RedirectResponse(url=location, status_code=exc.status_code)

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
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content=_error_payload("validation_error", "Validation error", exc.errors()),
        )

    @app.exception_handler(LobsterError)
    async def lobster_error_handler(request: Request, exc: LobsterError):
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(exc.code, exc.message, exc.params or None),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        from lobster.services.email import report_error

        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        report_error(exc, "unhandled request error", f"{request.method} {request.url.path}")
        return JSONResponse(
            status_code=500,
            content=_error_payload("internal_error", "Internal server error", None),
        )
