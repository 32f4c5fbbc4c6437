from __future__ import annotations

import re
from typing import Any, Dict

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def render(template: str, context: Dict[str, Any]) -> str:
    """Render {{placeholders}} in ``template`` using context fields.

    Substitution is a single pass, so values that themselves contain
    ``{{...}}`` are emitted verbatim. Unknown placeholders are left as-is.
    """
    def _sub(m: "re.Match[str]") -> str:
        key = m.group(1)
        val = context.get(key)
        if isinstance(val, (str, int, float)):
            return str(val)
        return m.group(0)

    return _PLACEHOLDER.sub(_sub, template)
