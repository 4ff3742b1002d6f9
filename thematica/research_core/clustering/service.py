"""Theme aggregation: merge-based agglomerative clustering of codes into candidate themes.

Clustering merges the most similar pair of clusters (cosine of centroids)
until the purpose's theme ceiling is reached. Merging alone cannot raise the
count, so a splitting phase follows: while the count is under the purpose's
floor, the least coherent cluster with two or more codes is bisected. When
nothing can be split the result stays under the floor and the shortfall is
reported through ``ClusteringStats.input_capped``.

Equal-similarity pairs are broken by larger combined source support, then by
the lexicographically smaller pair of theme ids, so results never depend on
input order or hashing.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import numpy as np
from loguru import logger

from thematica.errors import PipelineInvariantError
from thematica.models.purpose import PurposeProfile
from thematica.models.themes import CandidateTheme, InitialCode
from thematica.research_core.clustering.labeling import ThemeLabeler
from thematica.research_core.similarity import coherence, unit_rows

_TIE_EPSILON = 1e-12
_KMEANS_ITERATIONS = 10


@dataclass(slots=True)
class ClusteringStats:
    merges: int = 0
    splits: int = 0
    cross_batch_merges: int = 0
    input_capped: bool = False


def theme_coherence(theme: CandidateTheme) -> float:
    return coherence(np.vstack([c.embedding for c in theme.codes]), theme.centroid)


def check_code_conservation(themes: list[CandidateTheme], expected_code_ids: set[str], where: str) -> None:
    seen: list[str] = [c.id for t in themes for c in t.codes]
    empty = [t.id for t in themes if not t.codes]
    if empty:
        raise PipelineInvariantError(f"Empty theme after {where}", context={"theme_ids": empty})
    if len(seen) != len(set(seen)) or set(seen) != expected_code_ids:
        raise PipelineInvariantError(
            f"Code conservation violated after {where}",
            context={
                "expected": len(expected_code_ids),
                "clustered": len(seen),
                "distinct": len(set(seen)),
                "missing": sorted(expected_code_ids - set(seen))[:10],
            },
        )


class _Pool:
    """Clusters plus their pairwise centroid similarity, kept in sync across merges."""

    def __init__(self, clusters: list[CandidateTheme], groups: list[frozenset[int]] | None = None):
        self.clusters = clusters
        self.groups = groups
        self.sims = np.empty((0, 0))
        if clusters:
            units = unit_rows(np.vstack([c.centroid for c in clusters]))
            self.sims = units @ units.T
            np.fill_diagonal(self.sims, -np.inf)
            if groups is not None:
                for i in range(len(clusters)):
                    for j in range(len(clusters)):
                        if i != j and groups[i] & groups[j]:
                            self.sims[i, j] = -np.inf

    def __len__(self) -> int:
        return len(self.clusters)

    def best_pair(self) -> tuple[int, int, float] | None:
        if len(self.clusters) < 2:
            return None
        best = float(np.max(self.sims))
        if best == -np.inf:
            return None
        rows, cols = np.nonzero(self.sims >= best - _TIE_EPSILON)
        candidates = [(i, j) for i, j in zip(rows.tolist(), cols.tolist()) if i < j]

        def rank(pair: tuple[int, int]):
            a, b = self.clusters[pair[0]], self.clusters[pair[1]]
            support = len(a.source_ids | b.source_ids)
            return (-support, *sorted((a.id, b.id)))

        i, j = min(candidates, key=rank)
        return i, j, best

    def merge(self, i: int, j: int) -> None:
        keep, drop = (i, j) if i < j else (j, i)
        self.clusters[keep].absorb(self.clusters[drop])
        del self.clusters[drop]
        self.sims = np.delete(np.delete(self.sims, drop, axis=0), drop, axis=1)
        if self.groups is not None:
            self.groups[keep] = self.groups[keep] | self.groups[drop]
            del self.groups[drop]

        units = unit_rows(np.vstack([c.centroid for c in self.clusters]))
        row = units @ units[keep]
        row[keep] = -np.inf
        if self.groups is not None:
            for k, group in enumerate(self.groups):
                if k != keep and group & self.groups[keep]:
                    row[k] = -np.inf
        self.sims[keep, :] = row
        self.sims[:, keep] = row


class ThemeAggregationEngine:
    def __init__(self, labeler: ThemeLabeler | None = None, cross_batch_threshold: float = 0.80):
        self.labeler = labeler or ThemeLabeler()
        self.cross_batch_threshold = cross_batch_threshold

    def build_themes(
        self,
        codes: list[InitialCode],
        profile: PurposeProfile,
        stats: ClusteringStats | None = None,
    ) -> list[CandidateTheme]:
        """Cluster embedded codes into between ``min_themes`` and ``max_themes`` themes."""
        stats = stats if stats is not None else ClusteringStats()
        if not codes:
            return []
        missing = [c.id for c in codes if c.embedding is None]
        if missing:
            raise PipelineInvariantError(
                "Codes without embeddings reached clustering", context={"code_ids": missing[:10]}
            )
        ids = [c.id for c in codes]
        if len(ids) != len(set(ids)):
            raise PipelineInvariantError("Duplicate code ids reached clustering", context={"count": len(ids)})

        clusters = [CandidateTheme.from_codes([c]) for c in sorted(codes, key=lambda c: c.id)]
        themes = self.fit_to_target(clusters, profile, stats)
        check_code_conservation(themes, set(ids), "clustering")
        return themes

    def fit_to_target(
        self,
        themes: list[CandidateTheme],
        profile: PurposeProfile,
        stats: ClusteringStats | None = None,
    ) -> list[CandidateTheme]:
        stats = stats if stats is not None else ClusteringStats()
        pool = _Pool(sorted(themes, key=lambda t: t.id))
        stats.merges += self._agglomerate(pool, lambda count, _sim: count <= profile.max_themes)
        clusters = self._split_to_floor(pool.clusters, profile.min_themes, stats)
        return self._finish(clusters)

    def merge_across_batches(
        self,
        batches: list[list[CandidateTheme]],
        stats: ClusteringStats | None = None,
        threshold: float | None = None,
    ) -> list[CandidateTheme]:
        """Merge themes from different batches whose centroids reach the threshold.

        A merged theme never takes a second theme from a batch it already covers.
        """
        stats = stats if stats is not None else ClusteringStats()
        limit = self.cross_batch_threshold if threshold is None else threshold
        tagged = sorted(
            ((theme, frozenset({index})) for index, batch in enumerate(batches) for theme in batch),
            key=lambda pair: pair[0].id,
        )
        if not tagged:
            return []
        pool = _Pool([t for t, _ in tagged], [g for _, g in tagged])
        merged = self._agglomerate(pool, lambda _count, sim: sim < limit)
        stats.cross_batch_merges += merged
        if merged:
            logger.debug(f"Cross-batch aggregation merged {merged} theme pairs")
        return self._finish(pool.clusters)

    @staticmethod
    def _agglomerate(pool: _Pool, stop: Callable[[int, float], bool]) -> int:
        merges = 0
        while True:
            pair = pool.best_pair()
            if pair is None:
                break
            i, j, sim = pair
            if stop(len(pool), sim):
                break
            pool.merge(i, j)
            merges += 1
        return merges

    def _split_to_floor(
        self, clusters: list[CandidateTheme], floor: int, stats: ClusteringStats
    ) -> list[CandidateTheme]:
        clusters = list(clusters)
        while len(clusters) < floor:
            splittable = [c for c in clusters if len(c.codes) >= 2]
            if not splittable:
                stats.input_capped = True
                logger.info(
                    f"Theme count {len(clusters)} is below the floor {floor} and no cluster can be split"
                )
                break
            target = min(splittable, key=lambda c: (theme_coherence(c), c.id))
            clusters.remove(target)
            clusters.extend(bisect(target))
            stats.splits += 1
        return clusters

    def _finish(self, clusters: list[CandidateTheme]) -> list[CandidateTheme]:
        ordered = sorted(clusters, key=lambda t: t.id)
        return self.labeler.label_all(ordered)


def bisect(theme: CandidateTheme) -> tuple[CandidateTheme, CandidateTheme]:
    """Deterministic 2-means seeded with the two least similar member codes."""
    codes = sorted(theme.codes, key=lambda c: c.id)
    units = unit_rows(np.vstack([c.embedding for c in codes]))
    sims = units @ units.T
    flat = int(np.argmin(sims))
    seed_a, seed_b = divmod(flat, len(codes))
    if seed_a == seed_b:
        seed_a, seed_b = 0, len(codes) - 1

    initial = _assign(units, units[seed_a], units[seed_b])
    initial[seed_a], initial[seed_b] = True, False
    assignment = initial.copy()
    for _ in range(_KMEANS_ITERATIONS):
        if assignment.all() or not assignment.any():
            assignment = initial
            break
        updated = _assign(units, units[assignment].mean(axis=0), units[~assignment].mean(axis=0))
        if np.array_equal(updated, assignment):
            break
        assignment = updated
    if assignment.all() or not assignment.any():
        assignment = initial

    left = [c for c, side in zip(codes, assignment) if side]
    right = [c for c, side in zip(codes, assignment) if not side]
    return CandidateTheme.from_codes(left), CandidateTheme.from_codes(right)


def _assign(units: np.ndarray, centre_a: np.ndarray, centre_b: np.ndarray) -> np.ndarray:
    """True where a row is at least as close to ``centre_a`` as to ``centre_b``."""
    return (units @ centre_a) >= (units @ centre_b)
