"""Shared utilities."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Iterator, Sequence, TypeVar

import numpy as np
import orjson

T = TypeVar("T")

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", flags=re.DOTALL | re.IGNORECASE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso_str(dt: datetime) -> str:
    return dt.isoformat()


def parse_iso(s: str) -> datetime:
    return datetime.fromisoformat(s)


def json_dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode()


def json_loads(data: str | bytes) -> Any:
    return orjson.loads(data)


def strip_code_fences(raw: str) -> str:
    """Return the payload of a fenced ```json block, or the stripped text."""
    text = (raw or "").strip()
    if text.startswith("```"):
        m = _FENCE_RE.search(text)
        if m:
            return m.group(1).strip()
    return text


def batched(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    if size <= 0:
        raise ValueError("batch size must be positive")
    for start in range(0, len(items), size):
        yield items[start:start + size]


def fit_dims(arr: np.ndarray, dims: int) -> np.ndarray:
    """Truncate or zero-pad each row of ``arr`` to ``dims`` columns."""
    if arr.ndim == 1:
        arr = arr.reshape(1, -1)
    if arr.shape[1] == dims:
        out = arr
    elif arr.shape[1] > dims:
        out = arr[:, :dims]
    else:
        pad = np.zeros((arr.shape[0], dims - arr.shape[1]), dtype=np.float32)
        out = np.concatenate([arr, pad], axis=1)
    return np.ascontiguousarray(out, dtype=np.float32)


def vector_to_blob(vec: np.ndarray) -> bytes:
    return np.asarray(vec, dtype=np.float32).tobytes()


def blob_to_vector(blob: bytes | None) -> np.ndarray | None:
    if blob is None:
        return None
    return np.frombuffer(blob, dtype=np.float32).copy()
