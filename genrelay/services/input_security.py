"""
Strip markup from user-authored text before it is stored or sent to a model.
Applied to every user message; assistant/system content is left as is.
"""
import re

INPUT_LIMITS = {
    "message": 8000,
    "chat_id": 100,
    "model_id": 100,
}

# Patterns removed from user input (order matters: whole script blocks first)
UNSAFE_PATTERNS = [
    re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.I),
    re.compile(
        r"</?(script|iframe|object|embed|form|input|textarea|button|select|option|link|style|meta|base|applet)[^>]*>",
        re.I,
    ),
    re.compile(r"on\w+\s*=\s*[\"'][^\"']*[\"']", re.I),
    re.compile(r"on\w+\s*=\s*[^\s>]*", re.I),
    re.compile(r"javascript\s*:", re.I),
    re.compile(r"vbscript\s*:", re.I),
    re.compile(r"data\s*:\s*text/html", re.I),
]


def sanitize_input(text: str) -> str:
    """Remove script blocks, dangerous tags, inline handlers and script URLs."""
    if not text or not isinstance(text, str):
        return ""
    out = text
    for pattern in UNSAFE_PATTERNS:
        out = pattern.sub("", out)
    return out


def sanitize_messages(messages: list[dict]) -> list[dict]:
    return [
        {"role": m["role"], "content": sanitize_input(m["content"]) if m["role"] == "user" else m["content"]}
        for m in messages
    ]
