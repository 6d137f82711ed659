"""
Parse-or-absent numeric helpers.

Every scraped number goes through here so that a missing field, a malformed
field and a real zero never collapse into the same value.
"""

import math
import re
from typing import Any, Optional

_ABSENT_TOKENS = {"", "-", "--", "n/a", "na", "nan", "none", "null"}
_TRAILING_UNITS = re.compile(r"(%|원|주|배|억원|백만원|천주)+$")
_NUMBER = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)$")


def parse_number(value: Any) -> Optional[float]:
    """Return a float, or None when the text is empty or unparseable.

    Strips ``&nbsp;``, whitespace, thousands separators and a trailing unit
    such as ``%`` or ``원``. A leading minus sign is preserved.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None

    text = str(value).replace("&nbsp;", "").replace("\xa0", "")
    text = re.sub(r"\s+", "", text).replace(",", "")
    text = _TRAILING_UNITS.sub("", text)
    if text.lower() in _ABSENT_TOKENS:
        return None
    if not _NUMBER.match(text):
        return None
    number = float(text)
    return number if math.isfinite(number) else None


def parse_int(value: Any) -> Optional[int]:
    number = parse_number(value)
    if number is None:
        return None
    return int(number)
