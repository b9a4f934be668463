"""Utility helpers shared across the sync engine.

Everything here is pure (no I/O) so it can be used from providers, the mapper
and the client alike.
"""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

from bs4 import BeautifulSoup


_INDEX_RE = re.compile(r"\[(\d+)\]")

_SECRET_PATTERNS = [
    (re.compile(r"(Ocp-Apim-Subscription-Key=)[^&\s]+", re.IGNORECASE), r"\1***"),
    (re.compile(r"((?:api_?key|token|secret|app_key|key)=)[^&\s]+", re.IGNORECASE), r"\1***"),
]


def stable_id(*parts: str) -> str:
    """Create a deterministic identifier from a set of string parts."""
    joined = "|".join(p.strip() for p in parts if p is not None)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def uniq_preserve_order(items: Iterable[str]) -> List[str]:
    """Deduplicate while preserving first-seen order."""
    seen = set()
    out: List[str] = []
    for it in items:
        if not it:
            continue
        key = it.strip().lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(it)
    return out


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalize a datetime to aware UTC (naive values are assumed to be UTC)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def split_path(path: str) -> List[str]:
    """Split `addresses[0].postcode` into `["addresses", "0", "postcode"]`."""
    path = _INDEX_RE.sub(r".\1", path or "")
    return [p for p in path.split(".") if p != ""]


def resolve_path(data: Any, path: str) -> Any:
    """Resolve a dotted path (with optional `[n]` list indices) against nested data.

    An empty path returns `data` itself. Any missing key, out-of-range index or
    traversal into a scalar yields None instead of raising.
    """
    value = data
    for key in split_path(path):
        if isinstance(value, dict):
            if key not in value:
                return None
            value = value[key]
        elif isinstance(value, list) and key.lstrip("-").isdigit():
            idx = int(key)
            if idx < 0 or idx >= len(value):
                return None
            value = value[idx]
        else:
            return None
    return value


def flatten_keys(item: Any, prefix: str = "") -> List[str]:
    """List every leaf path of a raw record, e.g. `addresses[0].postcode`.

    Lists are described by their first element only, which is enough for an
    operator picking source paths for a field mapping.
    """
    keys: List[str] = []
    if not isinstance(item, dict):
        return keys
    for key, value in item.items():
        full = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict) and value:
            keys.extend(flatten_keys(value, full))
        elif isinstance(value, list) and value:
            keys.append(f"{full}[]")
            if isinstance(value[0], dict):
                keys.extend(flatten_keys(value[0], f"{full}[0]"))
        else:
            keys.append(full)
    return keys


def parse_datetime(value: Any) -> Optional[datetime]:
    """Best-effort conversion of an upstream date value to aware UTC.

    Accepts ISO-8601 strings (with or without `Z`), plain dates, epoch seconds
    or epoch milliseconds. Anything unparseable becomes None.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        return ensure_utc(value)

    if isinstance(value, (int, float)):
        ts = float(value)
        # Some sources send epoch milliseconds.
        if ts > 1e12:
            ts /= 1000.0
        try:
            return datetime.fromtimestamp(ts, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return ensure_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError:
            pass
        for fmt in ("%d/%m/%Y", "%d %B %Y", "%d %b %Y"):
            try:
                return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
            except ValueError:
                continue
        # Fall back to a leading YYYY-MM-DD, as some sources append junk.
        try:
            return datetime.strptime(text[:10], "%Y-%m-%d").replace(tzinfo=timezone.utc)
        except ValueError:
            return None
    return None


def clean_description(text: Optional[str]) -> str:
    """Turn an HTML-ish description into plain text with sane whitespace."""
    if not text:
        return ""
    soup = BeautifulSoup(str(text), "html.parser")
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for para in soup.find_all("p"):
        para.append("\n\n")
    text = soup.get_text().replace("\xa0", " ")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def mask_secrets(text: str) -> str:
    """Mask key-like query parameters before a URL is logged."""
    for pattern, repl in _SECRET_PATTERNS:
        text = pattern.sub(repl, text)
    return text
