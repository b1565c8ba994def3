"""SQL anonymization for span titles."""

import re

_NUMBERS_AND_QUOTED_STRINGS = re.compile(r"(\"[^\"]+\"|'[^']+'|([0-9]*\.)?[0-9]+)")


def anonymize(sql: str) -> str:
    """Replace numbers and quoted strings in ``sql`` with ``?``."""
    return _NUMBERS_AND_QUOTED_STRINGS.sub("?", sql)
