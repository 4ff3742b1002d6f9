"""Local theme labeling from the member codes' labels and excerpts."""
from __future__ import annotations

from collections import Counter

from thematica.models.themes import CandidateTheme
from thematica.research_core.coding.lexical import (
    MIN_WORD_LENGTH,
    STOP_WORDS,
    capitalize_label,
    is_noise_word,
    tokenize,
)

MAX_KEYWORDS = 7
KEYWORDS_FOR_LABEL = 3
MAX_DESCRIPTIONS = 3
MIN_DESCRIPTION_LENGTH = 10


class ThemeLabeler:
    def label(self, theme: CandidateTheme) -> CandidateTheme:
        labels = [c.label for c in theme.codes]
        theme.keywords = self.keywords(labels, [c.raw_text for c in theme.codes])
        theme.label = self.theme_label(labels, theme.keywords) or theme.codes[0].label
        theme.description = self.description([c.description for c in theme.codes], len(theme.codes), theme.keywords)
        return theme

    def label_all(self, themes: list[CandidateTheme]) -> list[CandidateTheme]:
        return [self.label(t) for t in themes]

    @staticmethod
    def keywords(labels: list[str], excerpts: list[str]) -> list[str]:
        counts: Counter[str] = Counter()
        for text in labels:
            # Labels are the distilled concept, so they outweigh raw excerpts.
            for word in tokenize(text):
                counts[word] += 2
        for text in excerpts:
            counts.update(tokenize(text))
        return [w for w, _ in sorted(counts.items(), key=lambda kv: -kv[1])][:MAX_KEYWORDS]

    @staticmethod
    def theme_label(labels: list[str], keywords: list[str]) -> str:
        phrases: Counter[str] = Counter()
        for label in labels:
            words = label.lower().split()
            for word in words:
                if len(word) > MIN_WORD_LENGTH and word not in STOP_WORDS and not is_noise_word(word):
                    phrases[word] += 1
            for a, b in zip(words, words[1:]):
                if (
                    a not in STOP_WORDS
                    and b not in STOP_WORDS
                    and not is_noise_word(a)
                    and not is_noise_word(b)
                ):
                    phrases[f"{a} {b}"] += 1
        if phrases:
            # Ties go to the two-word phrase.
            raw = max(phrases.items(), key=lambda kv: (kv[1], kv[0].count(" ")))[0]
        else:
            raw = " ".join(keywords[:KEYWORDS_FOR_LABEL])
        return capitalize_label(raw) if raw else ""

    @staticmethod
    def description(descriptions: list[str], code_count: int, keywords: list[str]) -> str:
        unique = [d for d in dict.fromkeys(descriptions) if len(d) > MIN_DESCRIPTION_LENGTH]
        if unique:
            return "; ".join(unique[:MAX_DESCRIPTIONS])
        focus = ", ".join(keywords[:KEYWORDS_FOR_LABEL]) or "a shared concept"
        return f"Theme encompassing {code_count} related codes focusing on {focus}"
