from __future__ import annotations

import json
import re
from typing import Type, TypeVar

from pydantic import BaseModel, ValidationError

from autopsy.errors import ProtocolError


T = TypeVar("T", bound=BaseModel)

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?(?P<body>.*?)\n?\s*```$", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """
    Models sometimes wrap JSON in ```json ... ``` despite being told not to.
    Only an outer fence is removed; fences inside string values are left alone.
    """
    t = (text or "").strip()
    m = _FENCE_RE.match(t)
    if m:
        return m.group("body").strip()
    return t


def decode_structured(raw: str | None, contract: Type[T], *, stage: str) -> T:
    """
    Decode one model response into `contract`.

    Empty output, invalid JSON, a non-object top level, or a shape mismatch all raise
    ProtocolError tagged with the stage; there is no retry at this layer.
    """
    body = strip_code_fences(raw or "")
    if not body:
        raise ProtocolError(f"{stage}: empty model response")
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"{stage}: json_parse_failed: {e.msg} at char {e.pos}") from e
    if not isinstance(data, dict):
        raise ProtocolError(f"{stage}: expected a JSON object, got {type(data).__name__}")
    try:
        return contract.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "<root>" for err in e.errors())
        raise ProtocolError(f"{stage}: response does not match {contract.__name__} ({fields})") from e
