"""
Security module for the StrandSign service.

Provides input validation, sanitization, and client identification for
rate limiting.
"""

import re
import uuid
from typing import Any, Dict, List, Optional


# ============================================================
# Input Validation
# ============================================================

HANDLE_PATTERN = re.compile(r'^[A-Za-z0-9_.-]{2,64}$')
EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
TXID_PATTERN = re.compile(r'^[a-f0-9]{64}$')
TOKEN_PATTERN = re.compile(r'^[A-Za-z0-9_-]{16,128}$')


class ValidationError(Exception):
    """Raised when input validation fails."""
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


def validate_handle(value: Optional[str], field_name: str = "handle") -> str:
    """
    Validate a user handle.

    Handles are compared case-insensitively and stored lowercased.

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field_name, "is required")
    value = value.strip().lstrip("$").lower()
    if not HANDLE_PATTERN.match(value):
        raise ValidationError(field_name, "must be 2-64 letters, digits, '.', '_' or '-'")
    return value


def validate_email(value: Optional[str], field_name: str = "email") -> str:
    if not isinstance(value, str) or not EMAIL_PATTERN.match(value.strip()):
        raise ValidationError(field_name, "must be a valid email address")
    return value.strip().lower()


def validate_txid(value: Optional[str], field_name: str = "txid") -> str:
    """Validate a 64-character hex ledger transaction id (lowercased)."""
    if not isinstance(value, str):
        raise ValidationError(field_name, "must be a string")
    value = value.strip().lower()
    if not TXID_PATTERN.match(value):
        raise ValidationError(field_name, "must be 64 hexadecimal characters")
    return value


def validate_token(value: str, field_name: str = "token") -> str:
    """Shape check for opaque signing and claim tokens before any lookup."""
    if not isinstance(value, str) or not TOKEN_PATTERN.match(value):
        raise ValidationError(field_name, "invalid format")
    return value


def validate_string_length(
    value: str,
    field_name: str,
    min_length: int = 1,
    max_length: int = 1000
) -> str:
    """
    Validate string length.

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(value, str):
        raise ValidationError(field_name, "must be a string")

    if len(value) < min_length:
        raise ValidationError(field_name, f"must be at least {min_length} characters")

    if len(value) > max_length:
        raise ValidationError(field_name, f"must not exceed {max_length} characters")

    return value


# ============================================================
# Request ID Generation
# ============================================================

def generate_request_id() -> str:
    """Generate a unique request ID for audit trail correlation."""
    return str(uuid.uuid4())


# ============================================================
# Rate Limiting Helpers
# ============================================================

def extract_client_id(
    headers: Dict[str, str],
    client_host: Optional[str] = None,
    trust_forwarded: bool = False
) -> str:
    """
    Extract a client identifier for rate limiting the public endpoints.

    Keyed on the peer address. X-Forwarded-For is honoured only when the
    service runs behind a proxy that sets it. Caller-supplied identity
    headers are never used.
    """
    if trust_forwarded:
        forwarded = headers.get("x-forwarded-for", "")
        if forwarded:
            return f"ip:{forwarded.split(',')[0].strip()}"

    if client_host:
        return f"ip:{client_host}"

    return "anonymous"


# ============================================================
# Audit Logging Helpers
# ============================================================

def sanitize_for_logging(data: Dict[str, Any], sensitive_fields: List[str] = None) -> Dict[str, Any]:
    """
    Sanitize data for logging by masking sensitive fields.

    Args:
        data: The data to sanitize
        sensitive_fields: List of field names to mask

    Returns:
        Sanitized copy of the data
    """
    if sensitive_fields is None:
        sensitive_fields = ["token", "claim_token", "signature", "wif", "private_key_b64", "data"]

    result = {}
    for key, value in data.items():
        if key in sensitive_fields:
            if isinstance(value, str) and len(value) > 8:
                result[key] = value[:4] + "..." + value[-4:]
            else:
                result[key] = "[REDACTED]"
        elif isinstance(value, dict):
            result[key] = sanitize_for_logging(value, sensitive_fields)
        elif isinstance(value, list):
            result[key] = [
                sanitize_for_logging(item, sensitive_fields) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            result[key] = value

    return result
