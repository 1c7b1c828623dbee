"""
Content fingerprinting for exact and near-duplicate detection.
"""

import hashlib
import re
from typing import Dict, List, Optional, Union

from bs4 import BeautifulSoup, Comment
from simhash import Simhash

SIGNATURE_BITS = 64
SHINGLE_SIZE = 3
DEFAULT_NEAR_DUPLICATE_THRESHOLD = 3

_WORD_RE = re.compile(r"\w+", re.UNICODE)
_WHITESPACE_RE = re.compile(r"\s+")

Signature = Union[int, str]


def clean_content_for_hashing(html: str) -> str:
    """
    Extract the visible text of a page for consistent hashing, dropping
    dynamic elements (scripts, styles, iframes) and comments.
    """
    if not html:
        return ""

    soup = BeautifulSoup(html, 'html.parser')

    for tag in soup.find_all(['script', 'style', 'noscript', 'iframe', 'template']):
        tag.decompose()

    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()

    root = soup.body or soup
    return normalize_text(root.get_text(separator=' ', strip=True))


def normalize_text(text: str) -> str:
    """Collapse whitespace so formatting changes never change a signature."""
    if not text:
        return ""
    return _WHITESPACE_RE.sub(' ', text).strip()


def shingles(text: str, size: int = SHINGLE_SIZE) -> List[str]:
    """Lowercase word shingles; texts shorter than one shingle yield their words."""
    words = _WORD_RE.findall(text.lower())
    if len(words) < size:
        return words
    return [" ".join(words[i:i + size]) for i in range(len(words) - size + 1)]


def exact_signature(text: str) -> str:
    """SHA-256 of the normalized text. Equal signatures mean identical content."""
    return hashlib.sha256(normalize_text(text).encode('utf-8')).hexdigest()


def near_duplicate_signature(text: str) -> Optional[int]:
    """64-bit SimHash over the word shingles of a text, or None for empty text."""
    features = shingles(normalize_text(text))
    if not features:
        return None
    return Simhash(features, f=SIGNATURE_BITS).value


def _as_int(signature: Signature) -> int:
    return int(signature) if isinstance(signature, str) else signature


def distance(sig1: Signature, sig2: Signature) -> int:
    """Hamming distance between two near-duplicate signatures."""
    return Simhash(_as_int(sig1), f=SIGNATURE_BITS).distance(Simhash(_as_int(sig2), f=SIGNATURE_BITS))


def similarity_percent(sig1: Signature, sig2: Signature) -> float:
    """Percentage of matching signature bits: (64 - d) / 64 * 100."""
    return (SIGNATURE_BITS - distance(sig1, sig2)) / SIGNATURE_BITS * 100.0


def generate_content_hashes(html_content: str) -> Dict[str, object]:
    """
    Generate SHA256 and SimHash for content analysis.

    Args:
        html_content: Raw HTML content

    Returns:
        Dictionary with 'content_hash_sha256', 'content_hash_simhash' (decimal
        string, the unsigned value does not fit a signed 64-bit column) and
        'content_length' (characters of visible text)
    """
    cleaned_content = clean_content_for_hashing(html_content)
    if not cleaned_content:
        return {
            'content_hash_sha256': '',
            'content_hash_simhash': '',
            'content_length': 0
        }

    signature = near_duplicate_signature(cleaned_content)
    return {
        'content_hash_sha256': exact_signature(cleaned_content),
        'content_hash_simhash': str(signature) if signature is not None else '',
        'content_length': len(cleaned_content)
    }


def is_exact_duplicate(hash1: str, hash2: str) -> bool:
    """
    Check if two SHA256 hashes represent exact duplicates.

    Args:
        hash1: First SHA256 hash
        hash2: Second SHA256 hash

    Returns:
        True if hashes are identical (exact duplicate)
    """
    return bool(hash1 and hash2 and hash1 == hash2)


def is_near_duplicate(sig1: Optional[Signature], sig2: Optional[Signature],
                      threshold: int = DEFAULT_NEAR_DUPLICATE_THRESHOLD) -> bool:
    """
    Check if two SimHash values represent near-duplicates.

    Args:
        sig1: First SimHash value
        sig2: Second SimHash value
        threshold: Maximum Hamming distance in bits (default 3, roughly 95% similar)

    Returns:
        True if the signatures differ in at most ``threshold`` bits
    """
    if sig1 in (None, '') or sig2 in (None, ''):
        return False
    return distance(sig1, sig2) <= threshold
