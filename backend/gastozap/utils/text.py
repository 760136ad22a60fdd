import re
import unicodedata

_WS_RE = re.compile(r"\s+")


def strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def fold(value: str | None) -> str:
    """Lowercase, accent-free, single-spaced form used for comparisons."""
    if not value:
        return ""
    return _WS_RE.sub(" ", strip_accents(value).lower()).strip()
