"""Message body decoder: UTF-8 JSON object -> Record."""
from __future__ import annotations

import json

from queue_to_bigquery.app.domain.errors import DecodeError
from queue_to_bigquery.app.domain.models import Record


def _reject_constant(name: str) -> float:
    raise DecodeError(f"body contains non-finite number {name}")


def decode(body: bytes) -> Record:
    """Decode a raw payload. Raises DecodeError for anything but a JSON object.

    NaN and Infinity are refused: the warehouse cannot store them and rejects
    the whole insert request that carries one.

    A failure here is permanent: redelivering the same bytes fails the same way.
    """
    try:
        data = json.loads(body.decode("utf-8"), parse_constant=_reject_constant)
    except UnicodeDecodeError as exc:
        raise DecodeError(f"body is not valid utf-8: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise DecodeError(f"body is not valid json: {exc}") from exc

    if not isinstance(data, dict):
        raise DecodeError(f"expected a json object, got {type(data).__name__}")
    return Record(fields=data)
