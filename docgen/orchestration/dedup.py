"""
Deduplication and ranking of aggregated literature records.

Two records are the same paper when both carry a DOI and the normalized DOIs
match, or, failing that, when their normalized title and year match. Merging
is transitive: if A matches B and B matches C, all three collapse into one
survivor.

The function is pure and deterministic for a given input order, and
idempotent: ranking an already ranked list returns it unchanged.
"""

from typing import Dict, Iterable, List, Optional, Tuple

from docgen.ai.academic_search import DedupedPaper, LiteratureRecord

_DOI_PREFIXES = (
    "https://doi.org/",
    "http://doi.org/",
    "https://dx.doi.org/",
    "http://dx.doi.org/",
    "doi:",
)


def normalize_doi(doi: Optional[str]) -> Optional[str]:
    """Lowercase a DOI and strip resolver prefixes; None if nothing remains."""
    if not doi:
        return None
    value = doi.strip().lower()
    for prefix in _DOI_PREFIXES:
        if value.startswith(prefix):
            value = value[len(prefix):]
            break
    value = value.strip()
    return value or None


def normalize_title(title: Optional[str]) -> str:
    """Case-fold and collapse whitespace."""
    return " ".join((title or "").casefold().split())


class _DisjointSet:
    def __init__(self, size: int):
        self.parent = list(range(size))

    def find(self, i: int) -> int:
        while self.parent[i] != i:
            self.parent[i] = self.parent[self.parent[i]]
            i = self.parent[i]
        return i

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        # Lower index stays the root so groups are labelled by first occurrence
        if rb < ra:
            ra, rb = rb, ra
        self.parent[rb] = ra


def _survivor_key(record: LiteratureRecord, index: int) -> Tuple[float, bool, int]:
    # Higher quality, then identifier-bearing, then earliest
    return (record.quality_score, normalize_doi(record.doi) is not None, -index)


def _rank_key(paper: LiteratureRecord) -> Tuple[float, int]:
    return (-paper.quality_score, -(paper.year or 0))


def dedupe_and_rank(
    records: Iterable[LiteratureRecord],
    *,
    min_quality: Optional[float] = None,
    max_papers: Optional[int] = None,
) -> List[DedupedPaper]:
    """
    Collapse duplicate records and rank the survivors.

    Args:
        records: Raw records in provider order.
        min_quality: Keep only papers scoring strictly above this.
        max_papers: Cap on the number of papers returned.

    Returns:
        Survivors sorted by (quality_score desc, year desc); ties keep the
        original provider order.
    """
    items = list(records)
    groups = _DisjointSet(len(items))

    by_doi: Dict[str, int] = {}
    # (title, year) -> indices of records without a DOI, and with one
    untagged: Dict[Tuple[str, Optional[int]], List[int]] = {}
    tagged: Dict[Tuple[str, Optional[int]], List[int]] = {}

    for index, record in enumerate(items):
        doi = normalize_doi(record.doi)
        if doi is not None:
            if doi in by_doi:
                groups.union(by_doi[doi], index)
            else:
                by_doi[doi] = index

        title = normalize_title(record.title)
        if not title:
            continue
        key = (title, record.year)
        (tagged if doi is not None else untagged).setdefault(key, []).append(index)

    # Title+year only decides when at least one side has no DOI; two
    # different DOIs are two different papers. DOI-less records join at
    # most one DOI group, the earliest one seen.
    for key, members in untagged.items():
        anchor = members[0]
        for other in members[1:]:
            groups.union(anchor, other)
        with_doi = tagged.get(key)
        if with_doi:
            groups.union(anchor, with_doi[0])

    best: Dict[int, int] = {}
    for index, record in enumerate(items):
        root = groups.find(index)
        current = best.get(root)
        if current is None or _survivor_key(record, index) > _survivor_key(items[current], current):
            best[root] = index

    survivors = [items[i] for i in sorted(best.values())]
    ranked = sorted(survivors, key=_rank_key)

    if min_quality is not None:
        ranked = [p for p in ranked if p.quality_score > min_quality]
    if max_papers is not None:
        ranked = ranked[:max(0, max_papers)]

    return [DedupedPaper.from_record(p) for p in ranked]
