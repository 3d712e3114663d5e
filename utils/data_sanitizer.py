"""
Data Sanitization Module
Masks credentials and signer references before they reach the logs
"""

import re
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class DataSanitizer:
    """Masking helpers for log output"""

    SENSITIVE_PATTERNS = {
        "private_key": re.compile(
            r'(?i)(private[_-]?key|priv[_-]?key)["\':=\s]*(0x)?([a-fA-F0-9]{64})'
        ),
        "bearer": re.compile(r'(?i)(bearer\s+)([a-zA-Z0-9._-]{8,})'),
        "api_key": re.compile(
            r'(?i)(api[_-]?key|apikey|secret[_-]?key)["\':=\s]*([a-zA-Z0-9_-]{16,})'
        ),
    }

    SENSITIVE_FIELDS = {
        "api_key",
        "apikey",
        "secret",
        "private_key",
        "key_ref",
        "signer_ref",
        "authorization",
        "token",
    }

    @classmethod
    def sanitize_text(cls, text: str) -> str:
        """Replace secrets embedded in free text"""
        if not text:
            return text
        sanitized = cls.SENSITIVE_PATTERNS["private_key"].sub(r"\1=[PRIVATE_KEY_REDACTED]", text)
        sanitized = cls.SENSITIVE_PATTERNS["bearer"].sub(r"\1[REDACTED]", sanitized)
        sanitized = cls.SENSITIVE_PATTERNS["api_key"].sub(r"\1=[API_KEY_REDACTED]", sanitized)
        return sanitized

    @classmethod
    def sanitize_dict(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        """Copy of data with sensitive fields masked, recursively"""
        sanitized: Dict[str, Any] = {}
        for key, value in data.items():
            if key.lower() in cls.SENSITIVE_FIELDS:
                sanitized[key] = "[REDACTED]"
            elif isinstance(value, dict):
                sanitized[key] = cls.sanitize_dict(value)
            elif isinstance(value, str):
                sanitized[key] = cls.sanitize_text(value)
            else:
                sanitized[key] = value
        return sanitized

    @classmethod
    def mask_api_key(cls, api_key: Optional[str], show_chars: int = 2) -> str:
        """
        Safely mask API key for logging

        Args:
            api_key: API key to mask
            show_chars: Number of characters to show at start/end (default: 2 for security)

        Returns:
            Masked API key safe for logging
        """
        if not api_key:
            return "[NO_API_KEY]"

        if len(api_key) <= show_chars * 2:
            return "[REDACTED]"

        return f"[API_KEY:{api_key[:show_chars]}***{api_key[-show_chars:]}]"


data_sanitizer = DataSanitizer()


def mask_api_key_safe(api_key: Optional[str]) -> str:
    """Safely mask API key for any logging"""
    return data_sanitizer.mask_api_key(api_key)


def sanitize_for_log(data: Any) -> Any:
    if isinstance(data, dict):
        return data_sanitizer.sanitize_dict(data)
    if isinstance(data, str):
        return data_sanitizer.sanitize_text(data)
    return data
