from __future__ import annotations

import hashlib
import math
import re
from collections import Counter

from docledger.core.config import EMBED_DIM

_TOKEN_RE = re.compile(r"[a-z0-9_]+")
# Rounded so re-embedding the same text serializes byte-identically.
_PRECISION = 8


def _feature(token: str) -> tuple[int, float]:
    # Signed feature hashing: the digest picks the slot, the sign and the weight.
    digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
    slot = int.from_bytes(digest[:4], "big") % EMBED_DIM
    sign = -1.0 if digest[4] & 1 else 1.0
    return slot, sign * (0.2 + digest[5] / 255.0)


def embed_text(text: str) -> list[float]:
    vector = [0.0] * EMBED_DIM
    for token, count in Counter(_TOKEN_RE.findall(text.lower())).items():
        slot, weight = _feature(token)
        vector[slot] += weight * count
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0.0:
        return vector
    return [round(value / norm, _PRECISION) for value in vector]
