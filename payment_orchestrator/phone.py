import re

from payment_orchestrator.errors import InvalidPhone

COUNTRY_CODE = "254"

# Safaricom, Airtel and Telkom mobile prefixes
MOBILE_PREFIXES = frozenset({"70", "71", "72", "74", "75", "76", "77", "78", "79", "10", "11"})

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: str) -> str:
    """Return ``raw`` as a 12-digit ``254XXXXXXXXX`` string.

    Accepts ``07XXXXXXXX``, ``+254 7XX XXX XXX``, ``254XXXXXXXXX`` and bare
    ``7XXXXXXXX``/``1XXXXXXXX`` subscriber numbers. Raises ``InvalidPhone`` for
    anything else, including numbers on an unsupported carrier prefix.
    """
    cleaned = _NON_DIGITS.sub("", raw or "")

    if len(cleaned) < 9:
        raise InvalidPhone("Phone number is too short. Please enter a valid Kenyan phone number.")
    if len(cleaned) > 12:
        raise InvalidPhone("Phone number is too long. Please enter a valid Kenyan phone number.")

    if cleaned.startswith(COUNTRY_CODE):
        if len(cleaned) != 12:
            raise InvalidPhone(
                "Invalid phone number format. Kenyan numbers should have 12 digits including country code."
            )
        normalized = cleaned
    elif cleaned.startswith("0"):
        if len(cleaned) != 10:
            raise InvalidPhone(
                "Invalid phone number format. Kenyan numbers starting with 0 should have 10 digits."
            )
        normalized = COUNTRY_CODE + cleaned[1:]
    elif cleaned[0] in ("7", "1"):
        if len(cleaned) != 9:
            raise InvalidPhone(
                "Invalid phone number format. Phone number should have 9 digits when excluding country code."
            )
        normalized = COUNTRY_CODE + cleaned
    else:
        raise InvalidPhone(
            "Invalid phone number format. Must be a Kenyan number (07XXXXXXXX, 254XXXXXXXXX, or 7XXXXXXXX)."
        )

    if normalized[3:5] not in MOBILE_PREFIXES:
        raise InvalidPhone()

    return normalized
