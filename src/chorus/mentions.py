"""Mention parsing and personality resolution.

Users address a personality by writing the mention sigil followed by its
name or an alias, e.g. ``@bambi hi`` or ``@bambi prime hi``. Aliases may span
several words, and the longest alias that resolves wins so ``@bambi prime``
is not mistaken for ``@bambi``.
"""

from __future__ import annotations

import re

from chorus.logging import get_logger
from chorus.models import MentionMatch, Personality
from chorus.repositories import PersonalityDirectory

log = get_logger("mentions")

_TRAILING_PUNCTUATION = re.compile(r"""[.,!?;:)"']+$""")
_SENTENCE_END = (".", ",", "!", "?", ";", ":")


class MentionResolver:
    """Find the personality a message addresses.

    Attributes:
        directory: Personality lookups by name and alias.
        mention_char: The sigil, a single punctuation character.
        max_words: Longest alias, in words, that will be tried.
    """

    def __init__(
        self,
        directory: PersonalityDirectory,
        mention_char: str = "@",
        max_words: int = 5,
    ) -> None:
        self.directory = directory
        self.mention_char = mention_char
        self.max_words = max_words

        sigil = re.escape(mention_char)
        self._single = re.compile(rf"""{sigil}([\w-]+)(?=[.,!?;:)"']|\s|$)""")
        self._multi = re.compile(
            rf"{sigil}([^\s{sigil}]+(?:[^\S\n]+[^\s{sigil}]+){{0,{max_words - 1}}})"
        )

    def has_mention(self, text: str | None) -> bool:
        """Cheap check: does the text contain anything shaped like a mention?"""
        if not text or self.mention_char not in text:
            return False
        return bool(self._single.search(text) or self._multi.search(text))

    def candidates(self, text: str) -> list[str]:
        """Mention texts to try, in lookup order.

        Single-word mentions come first, then multi-word combinations from
        longest to two words, each scanned left to right.
        """
        found: list[str] = []

        for match in self._single.finditer(text):
            name = _TRAILING_PUNCTUATION.sub("", match.group(1).strip())
            if name:
                found.append(name)

        for match in self._multi.finditer(text):
            words = self._leading_words(match.group(1))
            for size in range(min(self.max_words, len(words)), 1, -1):
                found.append(" ".join(words[:size]))

        return found

    async def resolve(self, text: str | None, identity: str | None = None) -> MentionMatch | None:
        """Resolve the best mention in ``text``, or None."""
        resolved = await self.resolve_personality(text, identity)
        return resolved[0] if resolved else None

    async def resolve_personality(
        self, text: str | None, identity: str | None = None
    ) -> tuple[MentionMatch, Personality] | None:
        """Like ``resolve`` but also returns the personality itself."""
        if not text or self.mention_char not in text:
            return None

        best: tuple[MentionMatch, Personality] | None = None
        for candidate in self.candidates(text):
            personality = await self._lookup(candidate, identity)
            if personality is None:
                continue

            match = MentionMatch(
                matched_text=candidate,
                word_count=len(candidate.split()),
                resolved_personality_id=personality.id,
            )
            log.debug("mention_candidate_resolved", text=candidate, personality=personality.id)
            # Strictly greater: ties keep the first found
            if best is None or match.word_count > best[0].word_count:
                best = (match, personality)

        if best is not None:
            log.info(
                "mention_resolved",
                text=best[0].matched_text,
                personality=best[1].id,
                word_count=best[0].word_count,
            )
        return best

    async def _lookup(self, name: str, identity: str | None) -> Personality | None:
        personality = await self.directory.get_by_name(name)
        if personality is None:
            personality = await self.directory.get_by_alias(identity, name)
        return personality

    def _leading_words(self, raw: str) -> list[str]:
        # Stop after the first word that ends a sentence or clause
        words: list[str] = []
        for word in raw.split():
            stripped = _TRAILING_PUNCTUATION.sub("", word)
            if stripped:
                words.append(stripped)
            if word.endswith(_SENTENCE_END) or not stripped:
                break
        return words
