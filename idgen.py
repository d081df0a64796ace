"""
Identifier generation for pastes and device codes.
Paste identifiers are short pronounceable strings made of alternating
consonants and vowels so they survive being read out loud or retyped.
"""

import random
import string
from typing import Iterable, Optional

CONSONANTS = "bcdfghjklmnprstvwz"
VOWELS = "aeiou"

DEVICE_CODE_LENGTH = 8
DEVICE_CODE_ALPHABET = string.ascii_uppercase + string.digits


class IdentifierGenerator:
    """Produces fixed-length pronounceable identifiers"""

    def __init__(
        self,
        length: int = 8,
        rng: Optional[random.Random] = None,
        reserved: Iterable[str] = (),
    ):
        if length < 2:
            raise ValueError(f"Identifier length must be at least 2, got {length}")
        self.length = length
        self.rng = rng or random.SystemRandom()
        # Words that would shadow a fixed route
        self.reserved = frozenset(reserved)

    def generate(self) -> str:
        """
        Generate a new identifier.

        Uniqueness is not checked here; the caller compares the result
        against its live keys.

        Returns:
            A lowercase string of exactly `length` letters
        """
        while True:
            candidate = self._syllables()
            if candidate not in self.reserved:
                return candidate

    def _syllables(self) -> str:
        use_vowel = self.rng.random() < 0.5
        letters = []
        for _ in range(self.length):
            letters.append(self.rng.choice(VOWELS if use_vowel else CONSONANTS))
            use_vowel = not use_vowel
        return "".join(letters)


def generate_device_code(rng: Optional[random.Random] = None) -> str:
    """Generate a random device code (uppercase letters and digits)"""
    rng = rng or random.SystemRandom()
    return "".join(rng.choice(DEVICE_CODE_ALPHABET) for _ in range(DEVICE_CODE_LENGTH))


def is_valid_device_code(value: Optional[str]) -> bool:
    """Check that a client-supplied device code has the expected format"""
    if not value or len(value) != DEVICE_CODE_LENGTH:
        return False
    return all(c in DEVICE_CODE_ALPHABET for c in value)
