"""Log redaction for billing logs.

Regex-based masking of e-mail addresses, card numbers and Stripe credentials.
Applied to log records only, never to stored data.
"""

import re
from typing import Any

PATTERNS: dict[str, re.Pattern[str]] = {
    "email": re.compile(
        r"[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}"
    ),
    "stripe_secret": re.compile(
        r"\b(sk|rk|whsec)_(?:live_|test_)?[A-Za-z0-9]{8,}\b"
    ),
    "credit_card": re.compile(
        r"\b\d{4}[\s\-]?\d{4}[\s\-]?\d{4}[\s\-]?\d{4}\b"
    ),
}


class PIIFilter:
    """Mask sensitive substrings for safe logging.

    Usage:
        pii = PIIFilter()
        safe_text = pii.mask(text)
    """

    def __init__(self, patterns: dict[str, re.Pattern[str]] | None = None) -> None:
        self._patterns = patterns or PATTERNS

    def contains_pii(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self._patterns.values())

    def mask(self, text: str) -> str:
        """Mask all matches.

        - Email: user@example.com → u****@e****.com
        - Stripe key: sk_live_abc123... → sk_****
        - Credit Card: 4111 1111 1111 1111 → 4111 **** **** 1111
        """
        result = text

        def mask_email(match: re.Match[str]) -> str:
            email = match.group(0)
            parts = email.split("@")
            if len(parts) == 2:
                local = parts[0][0] + "****" if parts[0] else "****"
                domain_parts = parts[1].rsplit(".", 1)
                domain = domain_parts[0][0] + "****" if domain_parts[0] else "****"
                tld = domain_parts[1] if len(domain_parts) > 1 else "com"
                return f"{local}@{domain}.{tld}"
            return "****@****.com"

        result = self._patterns["email"].sub(mask_email, result)
        result = self._patterns["stripe_secret"].sub(lambda m: f"{m.group(1)}_****", result)

        def mask_cc(match: re.Match[str]) -> str:
            cc = match.group(0).replace(" ", "").replace("-", "")
            return cc[:4] + " **** **** " + cc[-4:]

        result = self._patterns["credit_card"].sub(mask_cc, result)
        return result


_pii = PIIFilter()


def filter_log_record(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor: mask string values of a log record."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = _pii.mask(value)
    return event_dict
