import re
import uuid
from typing import Optional

_COMMENT_RE = re.compile(r"<!--[\s\S]*?-->")
_INTER_TAG_WS_RE = re.compile(r">\s+<")
_WS_RE = re.compile(r"\s+")
_SCRIPT_RE = re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style[\s\S]*?</style>", re.IGNORECASE)
_NOISY_ATTR_RE = re.compile(r'\s(class|id|style)="[^"]*"')
_TITLE_RE = re.compile(r"<title[^>]*>([^<]+)</title>", re.IGNORECASE)

AGGRESSIVE_DOM_LIMIT = 50000


def compress_dom(dom: str) -> str:
    """Strip comments and redundant whitespace without changing structure"""

    dom = _COMMENT_RE.sub("", dom)
    dom = _INTER_TAG_WS_RE.sub("><", dom)
    dom = _WS_RE.sub(" ", dom)
    return dom.strip()


def compress_dom_if_needed(dom: str, threshold: int) -> str:
    if len(dom) <= threshold:
        return dom
    return compress_dom(dom)


def aggressive_compress_dom(dom: str, limit: int = AGGRESSIVE_DOM_LIMIT) -> str:
    """Lossy compression: also drops scripts, styles and styling attributes"""

    dom = compress_dom(dom)
    dom = _SCRIPT_RE.sub("", dom)
    dom = _STYLE_RE.sub("", dom)
    dom = _NOISY_ATTR_RE.sub("", dom)
    return dom[:limit]


def extract_title(dom: str) -> Optional[str]:
    match = _TITLE_RE.search(dom or "")
    return match.group(1).strip() if match else None


def create_dom_summary(dom: str) -> str:
    """Replace a DOM with its title and a short body preview"""

    title = extract_title(dom) or "Unknown page"
    body_start = dom.find("<body")
    if body_start > -1:
        body = dom[body_start:body_start + 1000]
    else:
        body = dom[:1000]
    return f"Page: {title}\nBody preview: {compress_dom(body)}..."


def truncate_string(value: str, max_length: int) -> str:
    if len(value) <= max_length:
        return value
    return value[:max_length - 3] + "..."


def is_valid_session_id(session_id: str) -> bool:
    try:
        return str(uuid.UUID(session_id)) == session_id.lower()
    except (ValueError, AttributeError, TypeError):
        return False
