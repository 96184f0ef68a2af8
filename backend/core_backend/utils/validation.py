"""
Validation predicates and sanitizing helpers shared by the services.

The predicates return booleans; callers decide which GroupeatError to raise
so the error carries the operation's own context.
"""
import base64
import binascii
import logging
import re
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.core.validators import validate_email
from django.utils.html import escape, strip_tags

logger = logging.getLogger(__name__)

ADDRESS_KEY_RE = re.compile(r"^[0-9]{1,4}-[0-9]{1,7}-[0-9]{1,4}-[0-9]{1,9}$")
FULL_NAME_RE = re.compile(r"^[A-Za-zא-ת]{2,20} [A-Za-zא-ת]{2,20}$")

# Israeli phone formats: star codes, landlines, special prefixes, mobile and
# the newer 07x home lines.
PHONE_PATTERNS = {
    "asterisk_key": re.compile(r"^\*[2-9][0-9]{1,4}$"),
    "bezeq": re.compile(r"^0[2-489]-*[2-9]\d{6}$"),
    "special": re.compile(r"^1-*(599|700|800|801)-*[0-9]{3}-*[0-9]{3}$"),
    "cellular": re.compile(r"^05\d-*[2-9]\d{6}$"),
    "home_new": re.compile(r"^07[2-46-8]-*[1-9]\d{6}$"),
}


def is_empty(value) -> bool:
    return value is None or value == "" or (hasattr(value, "__len__") and len(value) == 0)


def is_true_integer(value) -> bool:
    """
    True for ints and for strings/decimals that represent an integer
    exactly ("12", 12.0). Booleans are rejected.
    """
    if isinstance(value, bool) or value is None:
        return False

    if isinstance(value, int):
        return True

    if isinstance(value, (float, Decimal)):
        try:
            return value == int(value)
        except (ValueError, OverflowError, ArithmeticError):
            return False

    if isinstance(value, str):
        return re.fullmatch(r"-?\d+", value.strip()) is not None

    return False


def is_address_key_valid(address_key) -> bool:
    return isinstance(address_key, str) and ADDRESS_KEY_RE.match(address_key) is not None


def is_user_token_valid(user_token) -> bool:
    """User tokens are issued by the ordering platform and must be Base64."""
    if is_empty(user_token) or not isinstance(user_token, str):
        return False

    try:
        base64.b64decode(user_token, validate=True)
    except (binascii.Error, ValueError):
        logger.info(f"Invalid user token: {user_token!r}")
        return False

    return True


def is_full_name_valid(full_name) -> bool:
    return isinstance(full_name, str) and FULL_NAME_RE.match(full_name) is not None


def is_phone_valid(phone) -> bool:
    if is_empty(phone) or not isinstance(phone, str):
        return False

    phone = phone.replace("-", "", 1).strip()

    return any(pattern.match(phone) for pattern in PHONE_PATTERNS.values())


def is_email_valid(email) -> bool:
    if is_empty(email):
        return False

    try:
        validate_email(str(email).lower())
    except ValidationError:
        return False

    return True


def sanitize_text(value):
    """Strip markup from a string and escape what is left. Non-strings pass through."""
    if not isinstance(value, str):
        return value

    return escape(strip_tags(value))
