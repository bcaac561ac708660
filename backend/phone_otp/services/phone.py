from __future__ import annotations

import re

from phone_otp.core.exceptions import InvalidPhoneNumber

COUNTRY_CODE = "+81"

# The one place that decides whether a phone number is acceptable.
_PHONE_RE = re.compile(r"^\+81[1-9]\d{8,9}$", re.ASCII)

# Full-width digits U+FF10..U+FF19 -> ASCII
_FULLWIDTH_DIGITS = str.maketrans("０１２３４５６７８９", "0123456789")


def normalize_phone(raw: str) -> str:
    """Canonicalize a Japanese phone number to ``+81XXXXXXXXX(X)``.

    Accepts domestic (``090-1234-5678``), country-code (``81 90 ...``,
    ``+81 90 ...``) and full-width notations. Raises ``InvalidPhoneNumber``
    if the result is not a valid Japanese number.
    """
    if not isinstance(raw, str):
        raise InvalidPhoneNumber("Phone number must be a string")

    digits = re.sub(r"\D", "", raw.translate(_FULLWIDTH_DIGITS), flags=re.ASCII)
    if digits.startswith("0"):
        normalized = COUNTRY_CODE + digits[1:]
    elif digits.startswith("81"):
        normalized = "+" + digits
    else:
        normalized = COUNTRY_CODE + digits

    if not _PHONE_RE.match(normalized):
        raise InvalidPhoneNumber("Invalid phone number format")
    return normalized


def mask_phone(phone: str) -> str:
    if not phone:
        return "[MASKED]"
    if len(phone) <= 4:
        return "*" * len(phone)
    prefix = "+" if phone.startswith("+") else ""
    body = phone[len(prefix):]
    return prefix + "*" * (len(body) - 4) + body[-4:]
