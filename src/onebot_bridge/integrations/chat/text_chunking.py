from __future__ import annotations


def split_fixed(text: str, limit: int) -> list[str]:
    """Split ``text`` into consecutive ``limit``-sized slices.

    Lossless: ``"".join(split_fixed(t, n)) == t`` for every positive ``n``.
    """
    if limit <= 0:
        raise ValueError("limit must be positive")
    if not isinstance(text, str) or not text:
        return []
    return [text[index : index + limit] for index in range(0, len(text), limit)]
