import re
from typing import Optional


def extract_json(text: Optional[str]) -> Optional[str]:
    """Outermost {...} block of a model reply, or None when there is none."""
    if not text:
        return None
    m = re.search(r'\{.*\}', text, re.S)
    return m.group(0).strip() if m else None
