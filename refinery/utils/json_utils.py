"""Helpers for pulling JSON out of oracle responses."""

import json
import re
from typing import Any, Optional

_CODE_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


def extract_json(text: Optional[str]) -> Any:
    """Extract the first JSON value from text that may carry fences or prose.

    Tries, in order: the whole text, each fenced code block, then the first
    decodable object or array found by scanning for ``{`` / ``[``.

    Returns:
        The decoded value, or None when nothing decodes.
    """
    if not text or not text.strip():
        return None

    stripped = text.strip()
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        pass

    for block in _CODE_BLOCK.findall(stripped):
        try:
            return json.loads(block.strip())
        except json.JSONDecodeError:
            continue

    decoder = json.JSONDecoder()
    for index, char in enumerate(stripped):
        if char not in "{[":
            continue
        try:
            value, _ = decoder.raw_decode(stripped[index:])
            return value
        except json.JSONDecodeError:
            continue

    return None
