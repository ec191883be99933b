"""Canonical, order-independent variant keys.

A variant identifies the distinguishing parameters of a query (date window,
breakdown, mode). Two logically identical queries must produce the same key
regardless of how their parameters were ordered or spelled.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional


LATEST_PREFIX = "latest"


def _canonical_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted({str(item).strip() for item in value if str(item).strip()})
        return ",".join(items) or None
    text = str(value).strip()
    if "," in text:
        return _canonical_value(text.split(","))
    return text or None


@dataclass(frozen=True)
class VariantKey:
    """Sorted tuple of (name, value) pairs with an optional prefix."""

    params: tuple[tuple[str, str], ...] = ()
    prefix: str = ""

    @classmethod
    def of(cls, params: Mapping[str, Any], prefix: str = "") -> "VariantKey":
        pairs = []
        for name, raw in params.items():
            value = _canonical_value(raw)
            if value is not None:
                pairs.append((name.strip().lower(), value))
        return cls(params=tuple(sorted(pairs)), prefix=prefix)

    def as_dict(self) -> dict[str, str]:
        return dict(self.params)

    def encode(self) -> str:
        body = "|".join(f"{name}:{value}" for name, value in self.params)
        if self.prefix:
            return f"{self.prefix}:{body}" if body else self.prefix
        return body

    def __str__(self) -> str:
        return self.encode()


@dataclass(frozen=True)
class VariantSet:
    """The variant keys one request reads and writes."""

    exact: VariantKey
    broad: VariantKey
    latest: VariantKey
    is_strict: bool


def _pick(params: Mapping[str, Any], names: Iterable[str]) -> dict[str, Any]:
    names = set(names)
    return {name: value for name, value in params.items() if name in names}


def derive_variants(
    params: Mapping[str, Any],
    window_params: Iterable[str],
    default_window: Optional[Mapping[str, Any]] = None,
    strict_date: bool = False,
) -> VariantSet:
    """Split request params into shape and window parts and build keys.

    Args:
        params: All distinguishing request parameters (mode included)
        window_params: Names of parameters describing the date window
        default_window: The endpoint's broad default window, if it has one
        strict_date: Caller asked for this exact window only

    Returns:
        VariantSet with exact, broad (default window) and latest-pointer keys
    """
    window_names = set(window_params)
    shape = {name: value for name, value in params.items() if name not in window_names}
    window = _pick(params, window_names)

    exact = VariantKey.of({**shape, **window, "strict": strict_date})
    broad = VariantKey.of({**shape, **(default_window or {})})
    latest = VariantKey.of(shape, prefix=LATEST_PREFIX)

    is_strict = strict_date
    if default_window is not None:
        requested = VariantKey.of(window)
        is_strict = is_strict or requested != VariantKey.of(default_window)

    return VariantSet(exact=exact, broad=broad, latest=latest, is_strict=is_strict)
