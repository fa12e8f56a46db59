"""
Quiz Item Ingestion — SimHash Fingerprinting

Shingle tokenizer, 64-bit signature generator and bucket assigner.

  normalize → word bigrams → SHA-256 (first 8 bytes, little-endian)
  → 64 signed accumulators → signature bits

Near-duplicate texts land a few bits apart; unrelated texts sit around
32 bits apart. The bucket (top 8 bits) is only a pruning key.
"""
from __future__ import annotations

import hashlib
from collections import Counter

import numpy as np

SIGNATURE_BITS = 64
BUCKET_BITS = 8
EMPTY_SIGNATURE = 0


def normalize_text(text: str) -> str:
    """Lowercase and collapse every whitespace run (incl. CR/LF/tab) to one space."""
    if not text:
        return ''
    return ' '.join(text.lower().split())


def shingles(text: str) -> list[str]:
    """Overlapping word bigrams of the normalized text; a lone word is its own shingle."""
    words = normalize_text(text).split(' ') if text else []
    words = [w for w in words if w]
    if len(words) < 2:
        return words
    return [f'{words[i]} {words[i + 1]}' for i in range(len(words) - 1)]


def shingle_hash(shingle: str) -> int:
    digest = hashlib.sha256(shingle.encode('utf-8')).digest()
    return int.from_bytes(digest[:8], 'little')


def sign(text: str) -> int:
    """64-bit SimHash of ``text``. Empty text signs to 0."""
    counts = Counter(shingles(text))
    if not counts:
        return EMPTY_SIGNATURE

    hashes = np.fromiter(
        (shingle_hash(s) for s in counts), dtype=np.uint64, count=len(counts))
    weights = np.fromiter(counts.values(), dtype=np.int64, count=len(counts))

    # One row per shingle, one column per bit (bit 0 first)
    bit_matrix = np.unpackbits(
        hashes.astype('<u8').view(np.uint8).reshape(-1, 8),
        axis=1, bitorder='little',
    ).astype(np.int64)
    accumulators = ((bit_matrix * 2 - 1) * weights[:, None]).sum(axis=0)

    signature = 0
    for i in np.flatnonzero(accumulators > 0):
        signature |= 1 << int(i)
    return signature


def bucket(signature: int) -> int:
    """Top ``BUCKET_BITS`` bits of the signature (0..255)."""
    return (signature >> (SIGNATURE_BITS - BUCKET_BITS)) & ((1 << BUCKET_BITS) - 1)


def hamming_distance(a: int, b: int) -> int:
    return (a ^ b).bit_count()


def format_signature(signature: int) -> str:
    """16 upper-case hex digits, the stored form of a signature."""
    return f'{signature & ((1 << SIGNATURE_BITS) - 1):016X}'


def parse_signature(value: str) -> int:
    if not value:
        return EMPTY_SIGNATURE
    return int(value, 16)


def fingerprint(text: str) -> tuple[int, int]:
    """Convenience: (signature, bucket) for ``text``."""
    sig = sign(text)
    return sig, bucket(sig)
