"""Transcript post-processing: duplicate paragraph flagging.

Speech models occasionally repeat a paragraph verbatim. Consecutive
duplicates are kept but marked so a reviewer can spot them.
"""

import re

DUPLICATE_FLAG = "[DUPLICATE - FLAGGED FOR REVIEW]"

_PARAGRAPH_SPLIT = re.compile(r"\n+")
_TRAILING_FLAG = re.compile(r"\s*" + re.escape(DUPLICATE_FLAG) + r"\s*$")


def flag_consecutive_duplicates(text: str) -> str:
    """Flag paragraphs that repeat the previous paragraph.

    Blank paragraphs are dropped and the remaining ones are joined with
    a blank line.

    Args:
        text: Raw transcript text.

    Returns:
        Text with consecutive duplicate paragraphs suffixed by the flag.
    """
    result: list[str] = []

    for paragraph in _PARAGRAPH_SPLIT.split(text):
        trimmed = paragraph.strip()
        if not trimmed:
            continue

        previous = result[-1] if result else ""
        previous_clean = _TRAILING_FLAG.sub("", previous).strip()

        if trimmed == previous_clean:
            result.append(f"{trimmed} {DUPLICATE_FLAG}")
        else:
            result.append(trimmed)

    return "\n\n".join(result)
