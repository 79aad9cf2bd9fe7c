from __future__ import annotations

import copy
import json
import math
from typing import Any, Mapping

from .errors import RunnerError

_ROUNDED_IMAGE_FIELDS = ("width", "height", "num_outputs", "seed")


def parse_number(value: Any, fallback: Any = None) -> Any:
    """Permissive numeric parse; returns ``fallback`` for blanks and non-finite values."""
    if value is None:
        return fallback
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return fallback
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return fallback
        try:
            number = float(text)
        except (ValueError, OverflowError):
            return fallback
    else:
        return fallback
    return number if math.isfinite(number) else fallback


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _plain_number(value: float) -> int | float:
    return int(value) if value.is_integer() else value


def clone_args(value: Any) -> dict[str, Any]:
    """Return a private copy of the Custom JSON parameter as the base input object."""
    if not value:
        return {}
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise RunnerError("params", f"Failed to parse Custom JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise RunnerError("params", "Custom JSON must be an object.")
        return parsed
    if isinstance(value, Mapping):
        return copy.deepcopy(dict(value))
    return {}


def build_input(params: Mapping[str, Any], tool: str) -> dict[str, Any]:
    payload = clone_args(params.get("args"))

    if params.get("prompt"):
        payload["prompt"] = str(params["prompt"])

    if tool == "image":
        for field in _ROUNDED_IMAGE_FIELDS:
            number = parse_number(params.get(field))
            if number is not None:
                payload[field] = round_half_up(number)
    elif tool in ("video", "audio"):
        duration = parse_number(params.get("duration"))
        if duration is not None:
            payload["duration"] = _plain_number(duration)

        seed = parse_number(params.get("seed"))
        if seed is not None:
            payload["seed"] = round_half_up(seed)

    return payload
