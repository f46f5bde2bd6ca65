"""Environment variable substitution: ``{{ name }}`` is replaced by the
value of the enabled variable called ``name``. Unknown names are left as
written so the sent request shows what was missing."""

import re
from typing import Dict, List

_VAR_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_.\-]*)\s*\}\}")


def variables_to_dict(pairs: List[dict]) -> Dict[str, str]:
    return {p["name"]: p.get("value", "") for p in pairs if p.get("enabled", True)}


def render(text: str, variables: Dict[str, str]) -> str:
    if not text or "{{" not in text:
        return text
    return _VAR_RE.sub(lambda m: variables.get(m.group(1), m.group(0)), text)
