"""Text normalisation and content fingerprint helpers."""

from __future__ import annotations

import hashlib
import unicodedata

_WHITESPACE = tuple("\u0009\u000a\u000b\u000c\u000d\u0020\u00a0\u1680\u2000\u2001\u2002\u2003\u2004\u2005\u2006\u2007\u2008\u2009\u200a\u202f\u205f\u3000")


def collapse_whitespace(text: str) -> str:
    """Collapse consecutive whitespace characters into single spaces."""

    if not text:
        return ""

    parts: list[str] = []
    current: list[str] = []
    for char in text:
        if char in _WHITESPACE:
            if current:
                parts.append("".join(current))
                current.clear()
        else:
            current.append(char)
    if current:
        parts.append("".join(current))
    return " ".join(part for part in parts if part)


def normalise_for_embedding(text: str) -> tuple[str, str]:
    """Return collapsed text alongside the hashable normalised form."""

    stripped = text.strip()
    if not stripped:
        return "", ""

    collapsed = collapse_whitespace(stripped)
    nfkc = unicodedata.normalize("NFKC", collapsed)
    normalised = nfkc.casefold()
    return collapsed, normalised


def is_blank(text: str | None) -> bool:
    return text is None or not text.strip()


def content_fingerprint(kind: str, model: str, content: str) -> str:
    """Cache key for a provider result.

    Text is fingerprinted on its normalised form so whitespace and case variants
    share one entry; URLs are fingerprinted verbatim.
    """

    if kind == "text":
        collapsed, normalised = normalise_for_embedding(content)
        base = normalised or collapsed
    else:
        base = content.strip()
    digest = hashlib.sha256(f"{kind}\x1f{model}\x1f{base}".encode("utf-8")).hexdigest()
    return f"{kind}:{digest}"


def summarise_description(description: str, *, max_sentences: int = 3) -> str:
    """First few sentences of an entity description, used in drift hints."""

    sentences: list[str] = []
    current: list[str] = []
    for char in description:
        if char in ".!?":
            sentence = "".join(current).strip()
            if sentence:
                sentences.append(sentence)
            current.clear()
            if len(sentences) >= max_sentences:
                break
        else:
            current.append(char)
    else:
        tail = "".join(current).strip()
        if tail and len(sentences) < max_sentences:
            sentences.append(tail)
    return ". ".join(sentences)
