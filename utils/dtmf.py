"""Keypad digit helpers: masking for logs and the input audit."""
from __future__ import annotations

import math
from typing import Any

MASK_CHAR = "•"


def mask_digits(digits: str, sensitive: bool = True, mask_char: str = MASK_CHAR) -> str:
    """
    Mask a digit string, keeping a short suffix visible.

    "123456" -> "••••56", "12" -> "••". Non-sensitive input is returned as-is.
    """
    if not sensitive or not digits:
        return digits or ""
    if len(digits) <= 2:
        return mask_char * len(digits)
    show = max(1, min(2, math.ceil(len(digits) / 3)))
    return mask_char * (len(digits) - show) + digits[-show:]


def normalize_stage_key(stage_key: Any) -> str:
    if not stage_key:
        return "GENERIC"
    return str(stage_key).strip().upper()

