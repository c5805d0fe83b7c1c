"""Text normalization that undoes common obfuscation of crisis language.

Catches "k1ll mys3lf", "k.i.l.l", fullwidth or styled unicode letters
and zero-width characters hidden inside words. Matching runs on the
plain lowercase text first; the normalized form is a second chance for
definitions that missed.
"""
import logging
import re
import unicodedata
from typing import Dict, FrozenSet

logger = logging.getLogger(__name__)


# Leetspeak character mappings (numbers/symbols -> letters)
LEETSPEAK_MAP: Dict[str, str] = {
    "0": "o",
    "1": "i",
    "3": "e",
    "4": "a",
    "5": "s",
    "7": "t",
    "8": "b",
    "@": "a",
    "$": "s",
    "!": "i",
    "+": "t",
    "|": "l",
}

_LEET_TABLE = str.maketrans(LEETSPEAK_MAP)

# Zero-width and invisible characters
STRIP_CHARS: FrozenSet[str] = frozenset({
    "\u200b",  # Zero-width space
    "\u200c",  # Zero-width non-joiner
    "\u200d",  # Zero-width joiner
    "\ufeff",  # Byte order mark
    "\u00ad",  # Soft hyphen
    "\u2060",  # Word joiner
})

_TRAILING_PUNCTUATION = ".,;:?!\"')"


class TextNormalizer:
    """Normalizes text before the second matching pass.

    Steps, in order:
    1. Strip zero-width characters
    2. Unicode NFKC folding (fullwidth, circled, mathematical letters)
    3. Leetspeak inside tokens that contain letters
    4. Collapse whitespace
    5. Join runs of single letters split by separators (k.i.l.l, k i l l)
    6. Lowercase
    """

    def __init__(self):
        # Two or more single letters joined by . - _
        self._punctuated_run = re.compile(
            r"(?<![^\W\d_])[^\W\d_](?:[.\-_]+[^\W\d_](?![^\W\d_]))+"
        )
        # Three or more single letters separated by spaces
        self._spaced_run = re.compile(
            r"(?<![^\W\d_])[^\W\d_](?: [^\W\d_](?![^\W\d_])){2,}"
        )
        self._separators = re.compile(r"[.\-_ ]+")
        self._token_pattern = re.compile(r"\S+")

    def normalize(self, text: str) -> str:
        if not text:
            return ""

        result = "".join(c for c in text if c not in STRIP_CHARS)
        result = unicodedata.normalize("NFKC", result)
        result = self._token_pattern.sub(self._convert_leetspeak, result)
        result = " ".join(result.split())
        result = self._punctuated_run.sub(self._join, result)
        result = self._spaced_run.sub(self._join, result)
        return result.lower()

    def _convert_leetspeak(self, match: "re.Match") -> str:
        token = match.group(0)
        if not any(c.isalpha() for c in token):
            # Plain numbers ("5 pills") stay numbers
            return token
        core = token.rstrip(_TRAILING_PUNCTUATION)
        return core.translate(_LEET_TABLE) + token[len(core):]

    def _join(self, match: "re.Match") -> str:
        return self._separators.sub("", match.group(0))
