from __future__ import annotations

from dataclasses import replace

import numpy as np
from loguru import logger

from thematica.models.themes import UnifiedTheme
from thematica.research_core.similarity import unit_rows


class DeduplicationEngine:
    """Merges near-duplicate final themes until no pair reaches the threshold.

    Running to a fixpoint makes the operation idempotent. The theme with more
    supporting sources keeps its label and description (ties: lexicographically
    first id). Provenance, keywords and excerpts are unioned and weights summed.
    """

    def __init__(self, threshold: float = 0.85):
        self.threshold = threshold

    def deduplicate(self, themes: list[UnifiedTheme]) -> list[UnifiedTheme]:
        current = sorted(themes, key=lambda t: t.id)
        merges = 0
        while len(current) > 1:
            pair = self._most_similar(current)
            if pair is None:
                break
            i, j = pair
            winner, loser = self._rank(current[i], current[j])
            merged = self._merge(winner, loser)
            current = sorted(
                [t for k, t in enumerate(current) if k not in (i, j)] + [merged],
                key=lambda t: t.id,
            )
            merges += 1
        if merges:
            logger.info(f"Deduplication merged {merges} theme(s); {len(current)} remain")
        return sorted(current, key=lambda t: (-t.weight, t.id))

    def _most_similar(self, themes: list[UnifiedTheme]) -> tuple[int, int] | None:
        with_centroid = [i for i, t in enumerate(themes) if t.centroid is not None]
        if len(with_centroid) < 2:
            return None
        units = unit_rows(np.vstack([themes[i].centroid for i in with_centroid]))
        sims = np.triu(units @ units.T, k=1)
        sims[np.tril_indices_from(sims)] = -np.inf
        best = float(sims.max())
        if best < self.threshold:
            return None
        a, b = np.unravel_index(int(np.argmax(sims)), sims.shape)
        return with_centroid[int(a)], with_centroid[int(b)]

    @staticmethod
    def _rank(a: UnifiedTheme, b: UnifiedTheme) -> tuple[UnifiedTheme, UnifiedTheme]:
        if (-a.support_count, a.id) <= (-b.support_count, b.id):
            return a, b
        return b, a

    @staticmethod
    def _merge(winner: UnifiedTheme, loser: UnifiedTheme) -> UnifiedTheme:
        total_codes = winner.code_count + loser.code_count
        w_share = winner.code_count / total_codes if total_codes else 0.5
        centroid = None
        if winner.centroid is not None and loser.centroid is not None:
            centroid = winner.centroid * w_share + loser.centroid * (1.0 - w_share)

        influence: dict[str, float] = {}
        weight = winner.weight + loser.weight
        for theme in (winner, loser):
            share = theme.weight / weight if weight else 0.5
            for source_id, value in theme.source_influence.items():
                influence[source_id] = influence.get(source_id, 0.0) + value * share

        return replace(
            winner,
            keywords=tuple(dict.fromkeys(winner.keywords + loser.keywords))[:7],
            source_ids=tuple(sorted(set(winner.source_ids) | set(loser.source_ids))),
            weight=weight,
            validation_score=max(winner.validation_score, loser.validation_score),
            code_count=total_codes,
            coherence=winner.coherence * w_share + loser.coherence * (1.0 - w_share),
            distinctiveness=min(winner.distinctiveness, loser.distinctiveness),
            excerpts=tuple(dict.fromkeys(winner.excerpts + loser.excerpts))[:3],
            source_influence=dict(sorted(influence.items())),
            centroid=centroid,
        )
