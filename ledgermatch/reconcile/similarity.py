"""Description ↔ vendor text similarity on a 0-100 scale."""

from __future__ import annotations

# Tokens this short ("the", "inc", "#12") say little about the merchant
MIN_TOKEN_LENGTH = 4


def _tokens(text: str) -> list[str]:
    return [w for w in text.split() if len(w) >= MIN_TOKEN_LENGTH]


def description_similarity(description: str | None, vendor: str | None) -> float:
    """Score how well a bank description matches a document's vendor.

    Containment either way scores 100, since vendor names usually appear
    verbatim inside bank descriptions. Otherwise counts cross-token
    substring hits among tokens of 4+ characters, relative to the longer
    token list.
    """
    desc = (description or "").strip().lower()
    vend = (vendor or "").strip().lower()
    if not desc or not vend:
        return 0.0

    if vend in desc or desc in vend:
        return 100.0

    desc_words = _tokens(desc)
    vend_words = _tokens(vend)
    max_words = max(len(desc_words), len(vend_words))
    if max_words == 0:
        return 0.0

    match_count = 0
    for dw in desc_words:
        for vw in vend_words:
            if vw in dw or dw in vw:
                match_count += 1

    # Repeated tokens can hit more than once; cap at a full match
    return min(100.0, match_count / max_words * 100)
