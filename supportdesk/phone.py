"""
Phone number helpers.

normalize_phone() is a best-effort heuristic for a single-country deployment,
not an E.164 parser: numbers of 10 digits, and 11-digit numbers not already
starting with it, get the default country code; anything with 12+ digits is
assumed to carry one already.
"""

import re
from typing import Tuple

JID_SUFFIXES = ("@s.whatsapp.net", "@c.us")
GROUP_JID_SUFFIX = "@g.us"


def normalize_phone(raw: str, country_code: str = "55") -> str:
    """
    Map a raw contact identifier to a dialable digit string.

    Examples (country_code="55"):
        "(11) 99999-0000"  -> "5511999990000"
        "1133334444"       -> "551133334444"
        "+55 11 99999-0000" -> "5511999990000"
    """
    digits = re.sub(r"\D", "", raw or "")

    # A 10-digit string is too short to hold a country code plus a full number
    if len(digits) == 10:
        return f"{country_code}{digits}"
    if len(digits) == 11 and not digits.startswith(country_code):
        return f"{country_code}{digits}"

    return digits


def phone_from_jid(jid: str) -> Tuple[str, bool]:
    """
    Strip the WhatsApp suffix from a remote jid.

    Returns:
        Tuple of (phone, is_group)
    """
    jid = (jid or "").strip()

    if jid.endswith(GROUP_JID_SUFFIX):
        return jid[: -len(GROUP_JID_SUFFIX)], True

    for suffix in JID_SUFFIXES:
        if jid.endswith(suffix):
            return jid[: -len(suffix)], False

    return jid, False
