import azure.functions as func
import logging
from typing import Optional

from auth.deps import current_email_from_request
from models import VerificationPurpose
from services.email_verification_service import EmailVerificationService, get_verification_service
from services.verification_errors import VerificationError
from utils.cors import cors_response, json_response
from utils.email_utils import normalize_email

logger = logging.getLogger(__name__)
bp = func.Blueprint()


def _error(code: str, message: str, status: int) -> func.HttpResponse:
    return json_response({"error": {"code": code, "message": message}}, status)


def _error_response(e: VerificationError) -> func.HttpResponse:
    if e.http_status >= 500:
        logger.error(f"Email verification failed: {e.code} ({e.__cause__!r})")
    return json_response(e.to_dict(), e.http_status)


def _json_body(req: func.HttpRequest) -> dict:
    try:
        data = req.get_json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _text_field(data: dict, key: str) -> str:
    value = data.get(key)
    return value.strip() if isinstance(value, str) else ""


# ────────────────────────────────────────────────────────────
# Handlers shared by the routes below
# ────────────────────────────────────────────────────────────
def handle_request_code(
    req: func.HttpRequest,
    purpose: VerificationPurpose,
    email: Optional[str] = None,
    service: Optional[EmailVerificationService] = None,
) -> func.HttpResponse:
    if email is None:
        email = _text_field(_json_body(req), "email")
    if not email:
        return _error("MISSING_FIELDS", "Missing email", 400)

    try:
        result = (service or get_verification_service()).request_code(email, purpose)
        return json_response(result.to_dict(), 200)
    except VerificationError as e:
        return _error_response(e)
    except Exception:
        logger.exception("Failed to send verification code")
        return _error("INTERNAL", "Unexpected error", 500)


def handle_submit_code(
    req: func.HttpRequest,
    purpose: VerificationPurpose,
    email: Optional[str] = None,
    service: Optional[EmailVerificationService] = None,
) -> func.HttpResponse:
    data = _json_body(req)
    if email is None:
        email = _text_field(data, "email")
    code = data.get("code")
    if not email or code is None or code == "":
        return _error("MISSING_FIELDS", "Missing email or code", 400)

    try:
        result = (service or get_verification_service()).submit_code(email, purpose, str(code))
        return json_response(result.to_dict(), 200)
    except VerificationError as e:
        return _error_response(e)
    except Exception:
        logger.exception("Failed to verify code")
        return _error("INTERNAL", "Unexpected error", 500)


def handle_status(
    req: func.HttpRequest,
    service: Optional[EmailVerificationService] = None,
) -> func.HttpResponse:
    email = (req.params.get("email") or "").strip()
    raw_purpose = req.params.get("purpose") or VerificationPurpose.SIGNUP.value
    if not email:
        return _error("MISSING_FIELDS", "Missing email", 400)
    try:
        purpose = VerificationPurpose.parse(raw_purpose)
    except ValueError:
        return _error("INVALID_PURPOSE", f"Unknown purpose: {raw_purpose}", 400)

    try:
        verified = (service or get_verification_service()).is_verified(email, purpose)
        return json_response({"email": normalize_email(email), "purpose": purpose.value, "verified": verified}, 200)
    except VerificationError as e:
        return _error_response(e)
    except Exception:
        logger.exception("Failed to read verification status")
        return _error("INTERNAL", "Unexpected error", 500)


# ────────────────────────────────────────────────────────────
# Sign-up
# ────────────────────────────────────────────────────────────
@bp.function_name(name="SendSignupVerification")
@bp.route(route="auth/email/send-verification", methods=["POST", "OPTIONS"],
          auth_level=func.AuthLevel.ANONYMOUS)
def send_signup_verification(req: func.HttpRequest) -> func.HttpResponse:
    """
    Send a sign-up verification code to the given email.

    Args:
        req: HTTP request containing JSON with email field

    Returns:
        200 with message and expires_in (seconds)

    Raises:
        400: Missing or invalid email
        429: Resend cooldown active or verification blocked
        502: Email could not be delivered
    """
    if req.method == "OPTIONS":
        return cors_response(status=204)
    return handle_request_code(req, VerificationPurpose.SIGNUP)


@bp.function_name(name="VerifySignupCode")
@bp.route(route="auth/email/verify", methods=["POST", "OPTIONS"],
          auth_level=func.AuthLevel.ANONYMOUS)
def verify_signup_code(req: func.HttpRequest) -> func.HttpResponse:
    """
    Check a sign-up verification code.

    Args:
        req: HTTP request containing JSON with email and code

    Returns:
        200 with message on success (also when already verified)

    Raises:
        400: Missing fields, bad format, or wrong code (with remaining_attempts)
        404: No code was requested for this email
        410: Code expired
        429: Too many failed attempts (with blocked_until)
    """
    if req.method == "OPTIONS":
        return cors_response(status=204)
    return handle_submit_code(req, VerificationPurpose.SIGNUP)


# ────────────────────────────────────────────────────────────
# Password reset (anonymous)
# ────────────────────────────────────────────────────────────
@bp.function_name(name="SendPasswordResetCode")
@bp.route(route="auth/email/send-reset-code", methods=["POST", "OPTIONS"],
          auth_level=func.AuthLevel.ANONYMOUS)
def send_password_reset_code(req: func.HttpRequest) -> func.HttpResponse:
    """Send a password reset code. Same contract as send-verification."""
    if req.method == "OPTIONS":
        return cors_response(status=204)
    return handle_request_code(req, VerificationPurpose.PASSWORD_RESET)


@bp.function_name(name="VerifyPasswordResetCode")
@bp.route(route="auth/email/verify-reset", methods=["POST", "OPTIONS"],
          auth_level=func.AuthLevel.ANONYMOUS)
def verify_password_reset_code(req: func.HttpRequest) -> func.HttpResponse:
    """Check a password reset code. Same contract as verify."""
    if req.method == "OPTIONS":
        return cors_response(status=204)
    return handle_submit_code(req, VerificationPurpose.PASSWORD_RESET)


# ────────────────────────────────────────────────────────────
# Password change (authenticated; email comes from the bearer token)
# ────────────────────────────────────────────────────────────
@bp.function_name(name="SendPasswordChangeCode")
@bp.route(route="auth/email/send-change-code", methods=["POST", "OPTIONS"],
          auth_level=func.AuthLevel.ANONYMOUS)
def send_password_change_code(req: func.HttpRequest) -> func.HttpResponse:
    """
    Send a password change confirmation code to the authenticated user.

    Raises:
        401: Missing or invalid bearer token
    """
    if req.method == "OPTIONS":
        return cors_response(status=204)
    email = current_email_from_request(req)
    if not email:
        return _error("UNAUTHORIZED", "Unauthorized", 401)
    return handle_request_code(req, VerificationPurpose.PASSWORD_CHANGE, email=email)


@bp.function_name(name="VerifyPasswordChangeCode")
@bp.route(route="auth/email/verify-change", methods=["POST", "OPTIONS"],
          auth_level=func.AuthLevel.ANONYMOUS)
def verify_password_change_code(req: func.HttpRequest) -> func.HttpResponse:
    """
    Check a password change confirmation code for the authenticated user.

    Raises:
        401: Missing or invalid bearer token
    """
    if req.method == "OPTIONS":
        return cors_response(status=204)
    email = current_email_from_request(req)
    if not email:
        return _error("UNAUTHORIZED", "Unauthorized", 401)
    return handle_submit_code(req, VerificationPurpose.PASSWORD_CHANGE, email=email)


@bp.function_name(name="EmailVerificationStatus")
@bp.route(route="auth/email/status", methods=["GET", "OPTIONS"],
          auth_level=func.AuthLevel.ANONYMOUS)
def email_verification_status(req: func.HttpRequest) -> func.HttpResponse:
    """Report whether (email, purpose) has a completed verification."""
    if req.method == "OPTIONS":
        return cors_response(status=204)
    return handle_status(req)
