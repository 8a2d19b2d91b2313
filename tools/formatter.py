# tools/formatter.py
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

FALLBACK_VARIABLE_VALUE = "-"

_VARIABLE_PATTERN = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)")


def format_message(
    template: str,
    variables: Optional[Dict[str, Any]] = None,
    app_name: Optional[str] = None,
    fallback: str = FALLBACK_VARIABLE_VALUE,
) -> str:
    """
    Render a '$name' template.

    Names match case-insensitively ($accessKey == $ACCESSKEY). A variable that is missing from
    `variables` or bound to a falsy value renders as `fallback`, so no message ever shows "None".
    $app and $time are provided unless the caller overrides them.
    """
    bag: Dict[str, Any] = {
        "app": app_name,
        "time": datetime.now(timezone.utc).strftime("%a, %d %b %Y %H:%M:%S GMT"),
    }
    for key, value in (variables or {}).items():
        bag[key.lstrip("$")] = value
    lookup = {key.lower(): value for key, value in bag.items()}

    def _replace(match: re.Match) -> str:
        value = lookup.get(match.group(1).lower())
        return str(value) if value else fallback

    return _VARIABLE_PATTERN.sub(_replace, template or "")
