import re

from gastozap.utils.text import fold

_WORD_RE = re.compile(r"[^\W\d_]+")
_MIN_TOKEN_LEN = 3

STOPWORDS = frozenset(
    {
        # pt
        "com", "para", "por", "pelo", "pela", "dos", "das", "nos", "nas", "uma", "uns", "umas",
        "que", "mais", "meu", "minha", "meus", "minhas", "seu", "sua", "este", "esta", "esse",
        "essa", "isso", "aqui", "hoje", "ontem", "reais", "real", "gastei", "paguei", "comprei",
        "recebi", "ganhei", "foi", "tive", "fiz",
        # en
        "the", "and", "for", "with", "from", "this", "that", "was", "were", "have", "had",
        "spent", "paid", "bought", "got", "received", "today", "yesterday", "some", "dollars",
        "bucks",
    }
)


def tokenize(text: str | None) -> list[str]:
    """Retrieval tokens: folded, letters only, no stopwords, simple plurals folded."""
    tokens = []
    for word in _WORD_RE.findall(fold(text)):
        if len(word) < _MIN_TOKEN_LEN or word in STOPWORDS:
            continue
        if len(word) > 4 and word.endswith("s"):
            word = word[:-1]
        tokens.append(word)
    return tokens
