import re

_EMAIL_RE = re.compile(
    r"[a-zA-Z0-9_+&*-]+(?:\.[a-zA-Z0-9_+&*-]+)*@(?:[a-zA-Z0-9-]+\.)+[a-zA-Z0-9-]{2,63}"
)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def is_valid_email(email: str) -> bool:
    if not email or not email.strip():
        return False
    return _EMAIL_RE.fullmatch(email) is not None


def mask_email(email: str) -> str:
    """
    Mask an address for logs: "user@example.com" -> "u***@e***.com".
    """
    if not email or not email.strip():
        return "[empty]"

    at = email.find("@")
    if at <= 0:
        return "[invalid]"

    local, domain = email[:at], email[at + 1:]
    masked_local = local[0] + "***" if len(local) > 1 else local

    if not domain:
        return f"{masked_local}@***"
    dot = domain.find(".")
    masked_domain = domain[0] + "***" + domain[dot:] if dot > 0 else domain[0] + "***"
    return f"{masked_local}@{masked_domain}"
