from __future__ import annotations

import logging
import re
from typing import List

logger = logging.getLogger(__name__)

TAG_RE = re.compile(r"<(/?)([A-Za-z_][\w.\-]*)[^>]*?(/?)>")
OPAQUE_RE = re.compile(r"<!--.*?-->|<!\[CDATA\[.*?\]\]>", re.DOTALL)


def needs_healing(content: str, root_tag: str) -> bool:
    return not content.rstrip().upper().endswith(f"</{root_tag.upper()}>")


def heal(content: str, root_tag: str = "MATREQ") -> str:
    """Close every element left open by a truncated export.

    Content already ending with the closing root tag is returned unchanged.
    Otherwise a trailing partial tag is dropped and the missing closing tags
    are appended innermost first.
    """
    if not needs_healing(content, root_tag):
        return content

    text = content.rstrip()
    last_open = text.rfind("<")
    if last_open > text.rfind(">"):
        text = text[:last_open].rstrip()

    stack: List[str] = []
    for m in TAG_RE.finditer(OPAQUE_RE.sub("", text)):
        closing, name, self_closing = m.group(1), m.group(2), m.group(3)
        if self_closing:
            continue
        if closing:
            # Stray closers are ignored rather than unwinding the stack
            if stack and stack[-1] == name:
                stack.pop()
        else:
            stack.append(name)

    if stack:
        logger.info(f"Healing truncated XML: appending {len(stack)} closing tag(s)")
    return text + "".join(f"</{name}>" for name in reversed(stack))
