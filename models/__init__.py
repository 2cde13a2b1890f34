### models/__init__.py
from .base import Base
from .email_verification import EmailVerification, VerificationPurpose
