from typing import Optional
from auth.token import decode_token
from utils.email_utils import is_valid_email, normalize_email

def email_from_token(token: str) -> Optional[str]:
    payload = decode_token(token)
    if not payload:
        return None
    # account tokens carry the address in "email"; older ones only in "sub"
    email = normalize_email(payload.get("email") or payload.get("sub") or "")
    return email if is_valid_email(email) else None

def current_email_from_request(req) -> Optional[str]:
    auth = req.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return email_from_token(auth[7:])
