# =============================================================================
# 📦 utils/result.py
# -----------------------------------------------------------------------------
# Ok/Err-Ergebnisse für Pfade, die auf einen Standardwert zurückfallen
# (Geo-Lookup, Kontext, api_call).
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    error: str


Result = Union[Ok[T], Err]