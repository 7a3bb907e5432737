"""Cache key derivation for proxied upstream resources."""

from __future__ import annotations

from typing import Iterable, Mapping, Sequence, Union
from urllib.parse import urlencode

from starlette.datastructures import QueryParams

CACHE_KEY_PREFIX = "contentful"

QueryValue = Union[str, Sequence[str]]


def canonical_query(query: Mapping[str, QueryValue]) -> str:
    """Serialize ``query`` with keys in sorted order.

    Repeated values for one key keep their request order because upstream
    filters such as ``order=-fields.date&order=sys.id`` are order sensitive.
    An empty mapping serializes to the empty string.
    """
    pairs: list[tuple[str, str]] = []
    for key in sorted(query):
        value = query[key]
        if isinstance(value, str):
            pairs.append((key, value))
        else:
            pairs.extend((key, str(item)) for item in value)
    return urlencode(pairs)


def derive_key(resource_path: str, query: Mapping[str, QueryValue]) -> str:
    return f"{CACHE_KEY_PREFIX}:{resource_path.strip('/')}:{canonical_query(query)}"


def query_items(params: QueryParams | Iterable[tuple[str, str]]) -> dict[str, QueryValue]:
    """Collapse a query multidict into ``{key: value | [values]}``."""
    items = params.multi_items() if isinstance(params, QueryParams) else list(params)
    grouped: dict[str, list[str]] = {}
    for key, value in items:
        grouped.setdefault(key, []).append(value)
    return {key: values[0] if len(values) == 1 else values for key, values in grouped.items()}
