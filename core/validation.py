"""Reqbench Plugin Bridge — Parameter Validation

Shared by the host dispatcher (event payloads), the tool server (tool
arguments) and the API facade (fail-fast argument checks).

Schema-driven checks return an error string or None; the facade helpers
raise ValidationError directly.
"""

from __future__ import annotations
import json
import re
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from core.errors import ValidationError

MAX_PARAM_DEPTH = 64         # Max nesting depth for params
MAX_PARAM_SIZE = 2_000_000   # Max total serialized size of params in chars
MAX_NAME_LENGTH = 512

HTTP_METHODS = frozenset({
    "GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS", "QUERY",
})
URL_SCHEMES = frozenset({"http", "https", "ws", "wss"})
GRPC_URL_SCHEMES = frozenset({"grpc", "grpcs", "http", "https"})
_TEMPLATE_RE = re.compile(r"\{\{.*?\}\}")


def check_param_safety(params: dict) -> Optional[str]:
    """Check params for excessive depth or size.

    Returns error string if unsafe, None if OK.
    """
    try:
        serialized = json.dumps(params)
    except (TypeError, ValueError, RecursionError):
        return "Parameters are not JSON-serializable"

    if len(serialized) > MAX_PARAM_SIZE:
        return f"Parameters too large ({len(serialized):,} chars, limit {MAX_PARAM_SIZE:,})"

    def _too_deep(obj, depth=0):
        if depth > MAX_PARAM_DEPTH:
            return True
        if isinstance(obj, dict):
            return any(_too_deep(v, depth + 1) for v in obj.values())
        if isinstance(obj, (list, tuple)):
            return any(_too_deep(v, depth + 1) for v in obj)
        return False

    if _too_deep(params):
        return f"Parameters exceed max nesting depth ({MAX_PARAM_DEPTH})"

    return None


def check_type(value: Any, expected: str) -> bool:
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)

    type_map = {
        "string": str,
        "boolean": bool,
        "array": list,
        "object": dict,
    }
    expected_types = type_map.get(expected)
    if expected_types is None:
        return True  # Unknown type → pass through
    return isinstance(value, expected_types)


def validate_params(schema: Dict[str, Any], params: dict, path: str = "") -> Optional[str]:
    """Validate params against a parameter schema.

    Checks:
    - No unknown params
    - All required params are present (declared params are required unless
      marked optional)
    - Declared types, with ``nullable`` allowing an explicit null
    - Array elements against ``items``
    """
    if not schema:
        if params:
            return "Accepts no parameters"
        return None

    unknown = set(params.keys()) - set(schema.keys())
    if unknown:
        names = ", ".join(f"{path}{name}" for name in sorted(unknown))
        return f"Unknown parameters: {names}"

    for param_name, param_def in schema.items():
        qualified = f"{path}{param_name}"
        if param_name not in params:
            if isinstance(param_def, dict) and param_def.get("optional", False):
                continue
            return f"Missing required parameter: '{qualified}'"

        if not isinstance(param_def, dict) or "type" not in param_def:
            continue

        value = params[param_name]
        if value is None and param_def.get("nullable", False):
            continue
        error = _validate_value(param_def, value, qualified)
        if error:
            return error

    return None


def _validate_value(param_def: Dict[str, Any], value: Any, qualified: str) -> Optional[str]:
    expected_type = param_def["type"]
    if not check_type(value, expected_type):
        return f"Parameter '{qualified}' expected type '{expected_type}', got '{type(value).__name__}'"

    enum = param_def.get("enum")
    if enum is not None and value not in enum:
        return f"Parameter '{qualified}' must be one of: {', '.join(map(str, enum))}"

    if expected_type == "array" and isinstance(param_def.get("items"), dict):
        items = param_def["items"]
        for index, element in enumerate(value):
            element_path = f"{qualified}[{index}]"
            if items.get("type") == "object" and "properties" in items:
                if not isinstance(element, dict):
                    return f"Parameter '{element_path}' expected type 'object', got '{type(element).__name__}'"
                error = validate_params(items["properties"], element, path=f"{element_path}.")
            else:
                error = _validate_value(items, element, element_path)
            if error:
                return error

    return None


# --- Fail-fast argument checks (raise ValidationError) ---

def validate_name(name: Any, label: str = "name") -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError(f"'{label}' must be a non-empty string")
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"'{label}' must be at most {MAX_NAME_LENGTH} characters")
    return name


def validate_url(url: Any, schemes: frozenset = URL_SCHEMES) -> str:
    """Accept empty URLs, templated URLs and URLs with one of ``schemes``
    (http(s)/ws(s) by default, ``GRPC_URL_SCHEMES`` for gRPC addresses).

    A URL without a scheme (``example.com/path``) is accepted; the sender
    defaults it to http.
    """
    if not isinstance(url, str):
        raise ValidationError("'url' must be a string")
    if url == "":
        return url
    if any(ch.isspace() for ch in url):
        raise ValidationError(f"Malformed url {url!r}: contains whitespace")
    if _TEMPLATE_RE.search(url):
        return url
    candidate = url if "://" in url else f"http://{url}"
    try:
        parts = urlsplit(candidate)
    except ValueError as e:
        raise ValidationError(f"Malformed url {url!r}: {e}")
    if parts.scheme.lower() not in schemes:
        raise ValidationError(f"Malformed url {url!r}: unsupported scheme {parts.scheme!r}")
    if not parts.netloc:
        raise ValidationError(f"Malformed url {url!r}: missing host")
    return url


def validate_method(method: Any) -> str:
    if not isinstance(method, str) or method.upper() not in HTTP_METHODS:
        raise ValidationError(
            f"'method' must be one of: {', '.join(sorted(HTTP_METHODS))}"
        )
    return method.upper()


def validate_pairs(pairs: Any, label: str) -> List[Dict[str, Any]]:
    if not isinstance(pairs, list):
        raise ValidationError(f"'{label}' must be a list of {{name, value}} objects")
    for index, pair in enumerate(pairs):
        if not isinstance(pair, dict) or not isinstance(pair.get("name"), str):
            raise ValidationError(f"'{label}[{index}]' must be an object with a string 'name'")
        if not isinstance(pair.get("value", ""), str):
            raise ValidationError(f"'{label}[{index}].value' must be a string")
        if not isinstance(pair.get("enabled", True), bool):
            raise ValidationError(f"'{label}[{index}].enabled' must be a boolean")
    return pairs


def validate_authentication(auth: Any) -> Optional[Dict[str, Any]]:
    """Authentication is null, ``{type: basic, username, password}`` or
    ``{type: bearer, token}``."""
    if auth is None:
        return None
    if not isinstance(auth, dict):
        raise ValidationError("'authentication' must be an object or null")
    auth_type = auth.get("type")
    required = {"basic": ("username", "password"), "bearer": ("token",)}.get(auth_type)
    if required is None:
        raise ValidationError("'authentication.type' must be 'basic' or 'bearer'")
    for key in required:
        if not isinstance(auth.get(key, ""), str):
            raise ValidationError(f"'authentication.{key}' must be a string")
    return auth
