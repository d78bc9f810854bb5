import json, re
from typing import Any, Dict, Iterable, Optional

_RE_FENCE = re.compile(r"```[a-zA-Z0-9_-]*")


def clean_json_string(s: str) -> str:
    """Drop Markdown code fences (```json ... ```) wherever they appear."""
    if not s:
        return ""
    return _RE_FENCE.sub("", s).strip()


def unwrap_json_string(s: str) -> str:
    """A reply that is itself a quoted JSON string ("{\\"a\\": 1}") is unquoted once."""
    s = s.strip()
    if len(s) >= 2 and s[0] == '"' and s[-1] == '"':
        try:
            inner = json.loads(s)
        except ValueError:
            return s
        if isinstance(inner, str):
            return inner.strip()
    return s


def extract_json_object(s: str) -> Optional[str]:
    """Text between the first '{' and the last '}', or None."""
    start = s.find("{")
    end = s.rfind("}")
    if start == -1 or end <= start:
        return None
    return s[start:end + 1]


def decode_json_object(s: str) -> Optional[Dict[str, Any]]:
    """Best-effort decode of the outermost JSON object in *s*."""
    candidate = extract_json_object(unwrap_json_string(clean_json_string(s)))
    if candidate is None:
        return None
    try:
        raw = json.loads(candidate)
    except ValueError:
        return None
    return raw if isinstance(raw, dict) else None


def first_present(source: Dict[str, Any], keys: Iterable[str], default: Any = None) -> Any:
    """Value of the first key in *keys* that is present and not blank."""
    for key in keys:
        value = source.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return default
