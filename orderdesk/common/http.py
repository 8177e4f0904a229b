import re
from typing import Any, Dict

from quart import request

from .errors import InvalidRequest

_INT_RE = re.compile(r"-?[0-9]+")


async def read_json() -> Dict[str, Any]:
    data = await request.get_json(force=True, silent=True)
    if not isinstance(data, dict):
        raise InvalidRequest("request body must be a JSON object")
    return data


def as_int(value: Any, field: str, error=InvalidRequest) -> int:
    """Accept ints and ASCII integer strings, reject bools, floats and the rest."""
    if isinstance(value, bool):
        raise error(f"{field} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and _INT_RE.fullmatch(value.strip()):
        return int(value)
    raise error(f"{field} must be an integer, got {value!r}")
