"""
Decoding of raw query strings into a normalized parameter mapping.

``filter[0]=a&filter[1]=b`` and ``filter=a&filter=b`` both end up as
``{"filter": ["a", "b"]}``.
"""
import re
from typing import Any, Dict, Iterable, List, Mapping, Tuple, Union
from urllib.parse import parse_qsl

INDEXED_KEY = re.compile(r"^([^\[\]]+)\[(\d*)\]$")

RawParams = Mapping[str, Union[str, List[str]]]


def normalize_indexed_params(params: RawParams) -> Dict[str, Any]:
    """
    Collapse ``key[N]`` / ``key[]`` entries into ordered lists.

    Indexed entries are ordered by their index, holes are dropped and plain
    keys are kept as they are. Already-normalized input is returned unchanged.
    """
    result: Dict[str, Any] = {}
    indexed: Dict[str, Dict[int, Any]] = {}
    appended: Dict[str, List[Any]] = {}

    for key, value in params.items():
        match = INDEXED_KEY.match(key)
        if match is None:
            result[key] = value
            continue

        base, index = match.group(1), match.group(2)
        values = value if isinstance(value, list) else [value]
        if index == "":
            appended.setdefault(base, []).extend(values)
        else:
            # a repeated ``key[N]`` keeps its last value
            indexed.setdefault(base, {})[int(index)] = values[-1]

    for base, slots in indexed.items():
        result[base] = [slots[i] for i in sorted(slots) if slots[i] is not None]
    for base, values in appended.items():
        existing = result.get(base, [])
        if not isinstance(existing, list):
            existing = [existing]
        result[base] = existing + [v for v in values if v is not None]

    for key, value in result.items():
        if isinstance(value, list):
            result[key] = [v for v in value if v is not None]

    return result


def fold_multi_items(items: Iterable[Tuple[str, str]]) -> Dict[str, Union[str, List[str]]]:
    """Fold ``(key, value)`` pairs; a key seen more than once maps to a list."""
    folded: Dict[str, Union[str, List[str]]] = {}
    for key, value in items:
        if key in folded:
            existing = folded[key]
            if isinstance(existing, list):
                existing.append(value)
            else:
                folded[key] = [existing, value]
        else:
            folded[key] = value
    return folded


def parse_query_string(query: str, delimiter: str = "&") -> Dict[str, Any]:
    """Decode ``a=1&b[0]=x&b[1]=y`` into a normalized mapping."""
    if delimiter == "&":
        pairs = parse_qsl(query, keep_blank_values=True)
    else:
        pairs = []
        for chunk in query.split(delimiter):
            if not chunk:
                continue
            key, _, value = chunk.partition("=")
            pairs.append((key, value))
    return normalize_indexed_params(fold_multi_items(pairs))
