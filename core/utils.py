from pathlib import Path
import sys, asyncio
import json
import re
from typing import Any, Optional

REPO_ROOT = Path(__file__).resolve().parents[1]
_CONSUMER_SAFE_RE = re.compile(r"[^A-Za-z0-9_-]+")


def set_loop_policy():
    if sys.platform.startswith("win"):
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


def optional_str(value: Any) -> Optional[str]:
    """str(value), keeping None and empty strings as None."""
    if value is None:
        return None
    text = str(value)
    return text or None


def consumer_label(value: Any) -> str:
    """
    Normalize a worker label for JetStream durable names.
    Anything outside [A-Za-z0-9_-] becomes "_".
    """
    text = "" if value is None else str(value)
    return _CONSUMER_SAFE_RE.sub("_", text) or "_"


def hop_result_key(cycle_count: int, label: str) -> str:
    return f"cycle-{int(cycle_count)}-{label}"


def to_jsonb(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)
