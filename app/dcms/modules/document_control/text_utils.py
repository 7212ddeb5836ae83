"""
Text helpers shared by the reindex pipeline and the evidence linker.
"""
from __future__ import annotations

import re
import unicodedata
from collections import Counter

from .constants import DOCUMENT_TYPE_CODES

STOP_WORDS = frozenset(
    """
    about above after again also among been before being below between both could
    does doing down during each every from further have having here into itself just
    more most must only other ought over same shall should some such than that their
    them then there these they this those through under until upon very were what
    when where which while will with within without would your yours
    page date revision version form document company
    """.split()
)

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_HSPACE_RE = re.compile(r"[ \t\f\v ]+")
_SPACE_AROUND_NL_RE = re.compile(r" *\n *")
_MANY_NEWLINES_RE = re.compile(r"\n{3,}")
_WORD_RE = re.compile(r"[a-z][a-z0-9_'-]*")

_TYPES_ALT = "|".join(sorted(DOCUMENT_TYPE_CODES, key=len, reverse=True))
_CONTROL_NUMBER_RE = re.compile(rf"\b([A-Z0-9]{{2,8}})-({_TYPES_ALT})-(\d{{3,4}})\b", re.IGNORECASE)


def clean_extracted_text(text: str | None) -> str:
    if not text:
        return ""
    out = unicodedata.normalize("NFKC", text)
    out = out.replace("\r\n", "\n").replace("\r", "\n")
    out = _CONTROL_CHARS_RE.sub("", out)
    out = _HSPACE_RE.sub(" ", out)
    out = _SPACE_AROUND_NL_RE.sub("\n", out)
    out = _MANY_NEWLINES_RE.sub("\n\n", out)
    return out.strip()


def extract_keywords(text: str | None, limit: int = 15) -> list[str]:
    """
    Most frequent lowercase words of 4+ characters that occur at least twice.
    Ties keep first-appearance order.
    """
    if not text or limit <= 0:
        return []
    words = [w.strip("'-_") for w in _WORD_RE.findall(text.lower())]
    counts = Counter(w for w in words if len(w) >= 4 and w not in STOP_WORDS and not w.isdigit())
    ranked = [w for w, n in counts.most_common() if n >= 2]
    return ranked[:limit]


def find_control_numbers(text: str | None, prefix: str | None = None) -> list[str]:
    """
    Control numbers like ACME-SWP-004 mentioned in text, uppercased, unique, in
    order of appearance. With a prefix, only that company's numbers are returned.
    """
    if not text:
        return []
    wanted = prefix.upper() if prefix else None
    seen: set[str] = set()
    out: list[str] = []
    for m in _CONTROL_NUMBER_RE.finditer(text):
        if wanted and m.group(1).upper() != wanted:
            continue
        cn = m.group(0).upper()
        if cn not in seen:
            seen.add(cn)
            out.append(cn)
    return out
