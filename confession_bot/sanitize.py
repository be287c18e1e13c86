import re
from typing import List

_SCRIPT_BLOCK = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_STYLE_BLOCK = re.compile(r"<style\b[^<]*(?:(?!</style>)<[^<]*)*</style>", re.IGNORECASE)
_JS_URI = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER = re.compile(r"""on\w+\s*=\s*(?:"[^"]*"|'[^']*')""", re.IGNORECASE)
_TAG = re.compile(r"<[^>]*>")
_HASHTAG = re.compile(r"#[A-Za-z0-9_]+")


def sanitize_input(text: str) -> str:
    """Strip markup, script/style blocks, javascript: URIs and inline event handlers."""
    if not text:
        return ""
    sanitized = _SCRIPT_BLOCK.sub("", text)
    sanitized = _STYLE_BLOCK.sub("", sanitized)
    sanitized = _JS_URI.sub("", sanitized)
    sanitized = _EVENT_HANDLER.sub("", sanitized)
    sanitized = _TAG.sub("", sanitized)
    return sanitized.strip()


def extract_hashtags(text: str) -> List[str]:
    return _HASHTAG.findall(text)


def preview(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
