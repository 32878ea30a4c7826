# backend/erp/routes/params.py
"""Query-string helpers shared by the API blueprints."""

from flask import request

from ..errors import ValidationError
from ..time_utils import parse_iso_date, parse_iso_datetime

DEFAULT_LIMIT = 50
MAX_LIMIT = 500


def page_args(default_limit: int = DEFAULT_LIMIT) -> tuple[int, int]:
    """limit/offset from the query string, clamped to [1, MAX_LIMIT] and >= 0."""
    limit = request.args.get("limit", default_limit, type=int)
    offset = request.args.get("offset", 0, type=int)

    # Clamp limit
    if limit < 1:
        limit = 1
    if limit > MAX_LIMIT:
        limit = MAX_LIMIT
    if offset < 0:
        offset = 0
    return limit, offset


def date_arg(name: str):
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return parse_iso_date(raw)
    except ValueError:
        raise ValidationError(f"Invalid {name} format", {"field": name})


def datetime_arg(name: str):
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return parse_iso_datetime(raw)
    except ValueError:
        raise ValidationError(f"Invalid {name} format", {"field": name})


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def paged(items, total: int, limit: int, offset: int) -> dict:
    return {
        "items": [item.to_dict() for item in items],
        "count": total,
        "limit": limit,
        "offset": offset,
    }
