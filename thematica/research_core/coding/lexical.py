"""Local code extraction: term frequency keywords and bigrams backed by verbatim excerpts."""
from __future__ import annotations

import asyncio
import re
from collections import Counter

from thematica.models.themes import InitialCode, SourceContent
from thematica.research_core.coding.base import CodeExtractionStrategy, CodeTarget, code_id

MIN_SENTENCE_LENGTH = 20
MIN_WORD_LENGTH = 3
MAX_EXCERPT_LENGTH = 300
EXCERPTS_PER_CODE = 3
# Share of the code budget given to bigrams; keywords take the rest.
BIGRAM_SHARE = 5 / 8

STOP_WORDS = frozenset(
    """
    the a an and or but nor yet so in on at to for of with by from as into through
    during before after above below between under about against among around behind
    i you he she it we they them their this that these those my your his her its our
    is am are was were been being be have has had having do does did doing will would
    should could may might must can also very just only even such more most some any
    all both each few many much other another same own which who whom whose what when
    where why how not no none nothing neither than too now then once again further
    here there
    """.split()
)

RESEARCH_TERM_WHITELIST = frozenset(
    """
    covid-19 covid19 sars-cov-2 long-covid h1n1 h5n1 h7n9 hiv-1 hiv-2 p-value
    alpha-level t-test f-test z-test r-squared r2 chi-square chi2 anova ancova manova
    meta-analysis meta-analytic rct n-of-1 mrna dna rna crispr cas9 covid-omicron
    h5n1-variant ml ai nlp llm gpt gpt-3 gpt-4 bert vr ar xr iot api sdk 2d 3d 4d 5d
    5g 6g wi-fi wi-fi-6 type-1 type-2 covid-alpha covid-delta
    """.split()
)

_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_NON_WORD = re.compile(r"[^\w\s-]")
_PURE_NUMBER = re.compile(r"^\d+$")
_COMPLEX_ABBREV = re.compile(r"^[a-z]+-\d+-[a-z]+$", re.IGNORECASE)
_LONG_ACRONYM = re.compile(r"^[A-Z]{7,}$")
_HAS_ALNUM = re.compile(r"[a-z0-9]", re.IGNORECASE)


def is_noise_word(word: str) -> bool:
    if not word:
        return True
    if word.lower() in RESEARCH_TERM_WHITELIST:
        return False
    if _PURE_NUMBER.match(word):
        return True
    digits = sum(ch.isdigit() for ch in word)
    if digits / len(word) > 0.5:
        return True
    if _COMPLEX_ABBREV.match(word) or _LONG_ACRONYM.match(word):
        return True
    if word.startswith("&"):
        return True
    if len(word) == 1:
        return True
    return not _HAS_ALNUM.search(word)


def tokenize(text: str) -> list[str]:
    words = []
    for raw in _NON_WORD.sub(" ", text).split():
        if is_noise_word(raw):
            continue
        word = raw.lower()
        if len(word) > MIN_WORD_LENGTH and word not in STOP_WORDS:
            words.append(word)
    return words


def segment_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_SPLIT.split(text) if len(s.strip()) > MIN_SENTENCE_LENGTH]


def _truncate(excerpt: str) -> str:
    if len(excerpt) <= MAX_EXCERPT_LENGTH:
        return excerpt
    return excerpt[:MAX_EXCERPT_LENGTH] + "..."


def _ranked(counter: Counter[str]) -> list[str]:
    # Counter keeps first-seen order, so equal counts fall back to position in the text.
    return [term for term, _ in sorted(counter.items(), key=lambda kv: -kv[1])]


def capitalize_label(label: str) -> str:
    return " ".join(w[:1].upper() + w[1:] for w in label.split(" "))


class LexicalCodeStrategy(CodeExtractionStrategy):
    """Deterministic, free, and runs off the event loop."""

    name = "local"

    async def extract(self, source: SourceContent, target: CodeTarget) -> list[InitialCode]:
        return await asyncio.to_thread(self.extract_sync, source, target)

    def extract_sync(self, source: SourceContent, target: CodeTarget) -> list[InitialCode]:
        sentences = segment_sentences(source.content)
        if not sentences:
            return []
        words = tokenize(source.content)
        if not words:
            return []

        lowered = [s.lower() for s in sentences]
        codes: list[InitialCode] = []
        seen: set[str] = set()
        for label in self._candidate_labels(words, target.maximum):
            if label in seen:
                continue
            seen.add(label)
            excerpts = [
                _truncate(sentences[i]) for i, s in enumerate(lowered) if label in s
            ][:EXCERPTS_PER_CODE]
            # A label with no supporting sentence is not a code.
            if not excerpts:
                continue
            pretty = capitalize_label(label)
            codes.append(
                InitialCode(
                    id=code_id(source.id, pretty, len(codes)),
                    label=pretty,
                    source_id=source.id,
                    raw_text=excerpts[0],
                    description=self._describe(source, pretty),
                    position=len(codes),
                )
            )
            if len(codes) >= target.maximum:
                break
        return codes

    @staticmethod
    def _candidate_labels(words: list[str], budget: int) -> list[str]:
        keywords = _ranked(Counter(words))
        bigrams = _ranked(Counter(f"{a} {b}" for a, b in zip(words, words[1:])))
        bigram_quota = max(1, round(budget * BIGRAM_SHARE))
        keyword_quota = max(1, budget - bigram_quota)
        primary = bigrams[:bigram_quota] + keywords[:keyword_quota]
        reserve = bigrams[bigram_quota : budget * 2] + keywords[keyword_quota : budget * 2]
        return primary + reserve

    @staticmethod
    def _describe(source: SourceContent, label: str) -> str:
        title = source.title[:50] + ("..." if len(source.title) > 50 else "")
        return f'Pattern identified through frequency analysis: "{label}" in "{title}"'
