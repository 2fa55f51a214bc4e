"""
SKYWATCH - Observatory Telemetry & Mount Kinematics
Coordinate Parsing Module

Copyright (c) 2026 Kay Schäfer. All Rights Reserved.
Proprietary and confidential. See LICENSE for details.

Parses the mixed-format angle strings reported by the mount
(``"219d54m07.5s"``, ``"-60d50m02s"``, ``"12h30m00s"``, ``"58:13:59.15"``
or plain decimals) into signed decimal degrees/hours.

The parser never raises: a malformed value degrades to a best-effort
partial sum or ``0.0`` so that one bad field cannot abort an acquisition
tick.
"""

import logging
import math
import re
from typing import List, Optional

logger = logging.getLogger(__name__)

_DMS_SPLIT = re.compile(r"[d°'\"ms]")
_HMS_SPLIT = re.compile(r"[hms]")
_LEADING_NUMBER = re.compile(r"^\s*(\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")


def _leading_float(text: str) -> Optional[float]:
    """Return the number at the start of *text*, or ``None``."""
    match = _LEADING_NUMBER.match(text)
    if match is None:
        return None
    value = float(match.group(0))
    return value if math.isfinite(value) else None


def _sexagesimal(segments: List[str]) -> float:
    """Reduce ``[a, b, c, ...]`` to ``a + b/60 + c/3600 + ...``.

    Empty segments are ignored; the sum stops at the first segment that
    does not start with a number.
    """
    total = 0.0
    index = 0
    for segment in segments:
        if not segment.strip():
            continue
        value = _leading_float(segment)
        if value is None:
            logger.debug("Stopping sexagesimal sum at segment %r", segment)
            break
        total += value / (60 ** index)
        index += 1
    return total


def parse_coordinate(raw) -> float:
    """Parse an angle string into signed decimal degrees or hours.

    Format detection, first match wins:

    1. contains ``d`` or ``°`` → degrees/minutes/seconds
    2. contains ``h``          → hours/minutes/seconds
    3. contains ``:``          → colon-separated triple
    4. otherwise               → plain decimal

    A leading ``-`` (or ``+``) is stripped once before detection and the
    sign is applied once to the result, for every format.

    Args:
        raw: Value reported by the server; ``None`` and ``""`` give ``0.0``.

    Returns:
        Decimal value (hours for HMS input, degrees otherwise).
    """
    if raw is None:
        return 0.0
    if isinstance(raw, bool):
        return 0.0
    if isinstance(raw, (int, float)):
        return float(raw) if math.isfinite(raw) else 0.0

    text = str(raw).strip()
    if not text:
        return 0.0

    sign = 1.0
    if text[0] in "+-":
        if text[0] == "-":
            sign = -1.0
        text = text[1:].lstrip()

    if "d" in text or "°" in text:
        value = _sexagesimal(_DMS_SPLIT.split(text))
    elif "h" in text:
        value = _sexagesimal(_HMS_SPLIT.split(text))
    elif ":" in text:
        value = _sexagesimal(text.split(":"))
    else:
        value = _leading_float(text)
        if value is None:
            logger.warning("Unparseable coordinate %r – using 0", raw)
            return 0.0

    return sign * value


def hms_to_hours(raw) -> float:
    """Convert an ``HH:MM:SS`` string to decimal hours.

    Anything other than exactly three colon-separated numeric segments
    yields ``0.0``.
    """
    if not raw or not isinstance(raw, str):
        return 0.0
    parts = raw.split(":")
    if len(parts) != 3:
        return 0.0
    try:
        h, m, s = (float(p) for p in parts)
    except ValueError:
        return 0.0
    value = h + m / 60.0 + s / 3600.0
    return value if math.isfinite(value) else 0.0


def format_hms(hours: float) -> str:
    """Format decimal hours as ``HH:MM:SS`` wrapped into [0, 24)."""
    total = int(round((hours % 24.0) * 3600.0)) % 86400
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"
