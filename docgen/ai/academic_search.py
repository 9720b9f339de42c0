"""
Literature source clients -- pull papers from free scholarly APIs.

Sources:
  - Semantic Scholar (api.semanticscholar.org) -- free, no key
  - OpenAlex (api.openalex.org) -- open scholarly metadata, free
  - arXiv (export.arxiv.org) -- preprints, Atom feed
  - PubMed (eutils.ncbi.nlm.nih.gov) -- biomedical literature
  - CrossRef (api.crossref.org) -- DOI metadata, free

Every client normalizes hits into LiteratureRecord objects and assigns each
a provider-specific quality score in [0, 1]. A search with no hits returns an
empty list; transport and HTTP errors propagate to the caller.
"""

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from docgen.config import Settings, get_settings
from docgen.logging_config import get_logger

logger = get_logger(__name__)

ATOM_NS = "http://www.w3.org/2005/Atom"
ARXIV_NS = "http://arxiv.org/schemas/atom"

# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class LiteratureRecord:
    """Normalized hit from one literature provider."""
    title: str
    authors: List[str] = field(default_factory=list)
    year: Optional[int] = None
    doi: Optional[str] = None
    source: str = ""  # provider id, e.g. "semantic_scholar"
    is_open_access: bool = False
    quality_score: float = 0.0
    venue: Optional[str] = None
    url: Optional[str] = None
    abstract: Optional[str] = None
    citation_count: int = 0
    paper_id: Optional[str] = None

    @property
    def short_cite(self) -> str:
        """E.g. 'Smith et al. (2023)'"""
        if not self.authors:
            first = "Unknown"
        else:
            parts = self.authors[0].split() if self.authors[0] else []
            surname = parts[-1] if parts else "Unknown"
            first = surname if len(self.authors) == 1 else surname + " et al."
        return f"{first} ({self.year or 'n.d.'})"


@dataclass
class DedupedPaper(LiteratureRecord):
    """A record that survived deduplication; persisted to the literature set."""

    @classmethod
    def from_record(cls, record: LiteratureRecord) -> "DedupedPaper":
        if isinstance(record, DedupedPaper):
            return record
        return cls(
            title=record.title,
            authors=list(record.authors),
            year=record.year,
            doi=record.doi,
            source=record.source,
            is_open_access=record.is_open_access,
            quality_score=record.quality_score,
            venue=record.venue,
            url=record.url,
            abstract=record.abstract,
            citation_count=record.citation_count,
            paper_id=record.paper_id,
        )


# ---------------------------------------------------------------------------
# Quality scoring
# ---------------------------------------------------------------------------

def _this_year() -> int:
    return datetime.now(timezone.utc).year


def recency_bonus(year: Optional[int], current_year: Optional[int] = None) -> float:
    """0.2 within the last 5 years, 0.1 within 10, else 0."""
    if not year:
        return 0.0
    current_year = current_year or _this_year()
    if year >= current_year - 5:
        return 0.2
    if year >= current_year - 10:
        return 0.1
    return 0.0


def score_citation_indexed(
    citation_count: int,
    *,
    is_open_access: bool,
    year: Optional[int],
    has_venue: bool,
    current_year: Optional[int] = None,
) -> float:
    """Semantic Scholar / OpenAlex: citations 0.4, open access 0.2, recency 0.2, venue 0.2."""
    score = min(0.4, (max(citation_count, 0) / 100) * 0.4)
    if is_open_access:
        score += 0.2
    score += recency_bonus(year, current_year)
    if has_venue:
        score += 0.2
    return round(min(1.0, score), 2)


def score_arxiv(
    relevance: float,
    *,
    year: Optional[int],
    has_doi: bool,
    has_abstract: bool,
    current_year: Optional[int] = None,
) -> float:
    """arXiv: base 0.2 (free access), relevance up to 0.5, recency, DOI 0.1, abstract 0.1."""
    score = 0.2
    score += min(0.5, max(relevance, 0.0) * 0.5)
    score += recency_bonus(year, current_year)
    if has_doi:
        score += 0.1
    if has_abstract:
        score += 0.1
    return round(min(1.0, score), 2)


def score_pubmed(
    *,
    year: Optional[int],
    has_doi: bool,
    has_abstract: bool,
    current_year: Optional[int] = None,
) -> float:
    """PubMed: base 0.3, abstract 0.3, recency 0.2, DOI 0.2."""
    score = 0.3
    if has_abstract:
        score += 0.3
    score += recency_bonus(year, current_year)
    if has_doi:
        score += 0.2
    return round(min(1.0, score), 2)


def score_crossref(
    citation_count: int,
    *,
    has_doi: bool,
    year: Optional[int],
    has_journal: bool,
    current_year: Optional[int] = None,
) -> float:
    """CrossRef: citations 0.5, DOI 0.2, recency 0.2, journal 0.1."""
    score = min(0.5, (max(citation_count, 0) / 50) * 0.5)
    if has_doi:
        score += 0.2
    score += recency_bonus(year, current_year)
    if has_journal:
        score += 0.1
    return round(min(1.0, score), 2)


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

class LiteratureSource:
    """
    Base class for one academic search provider.

    Subclasses implement ``search(topic)``; it returns ``[]`` when nothing
    matches and raises on transport or authentication failures.
    """

    source_id: str = ""
    display_name: str = ""

    def __init__(self, client: httpx.AsyncClient, settings: Optional[Settings] = None):
        self.client = client
        self.settings = settings or get_settings()

    @property
    def limit(self) -> int:
        return self.settings.literature_results_per_provider

    async def search(self, topic: str) -> List[LiteratureRecord]:
        raise NotImplementedError

    async def _get_json(self, url: str, **kwargs: Any) -> Dict[str, Any]:
        resp = await self.client.get(url, timeout=self.settings.literature_provider_timeout, **kwargs)
        resp.raise_for_status()
        return resp.json()


class SemanticScholarSource(LiteratureSource):
    """Semantic Scholar Graph API."""

    source_id = "semantic_scholar"
    display_name = "Semantic Scholar"
    url = "https://api.semanticscholar.org/graph/v1/paper/search"

    async def search(self, topic: str) -> List[LiteratureRecord]:
        params = {
            "query": topic,
            "limit": min(self.limit, 100),
            "fields": "paperId,title,authors,year,abstract,citationCount,externalIds,"
                      "journal,venue,isOpenAccess,url",
        }
        data = await self._get_json(self.url, params=params)

        records: List[LiteratureRecord] = []
        for item in data.get("data") or []:
            authors = [a.get("name", "") for a in (item.get("authors") or [])]
            journal_info = item.get("journal") or {}
            venue = journal_info.get("name") if isinstance(journal_info, dict) else None
            venue = venue or item.get("venue") or None
            citations = item.get("citationCount") or 0
            is_oa = bool(item.get("isOpenAccess"))
            year = item.get("year")
            records.append(LiteratureRecord(
                title=item.get("title") or "",
                authors=authors,
                year=year,
                doi=(item.get("externalIds") or {}).get("DOI"),
                source=self.source_id,
                is_open_access=is_oa,
                quality_score=score_citation_indexed(
                    citations, is_open_access=is_oa, year=year, has_venue=bool(venue),
                ),
                venue=venue,
                url=item.get("url"),
                abstract=item.get("abstract"),
                citation_count=citations,
                paper_id=item.get("paperId"),
            ))
        return records


class OpenAlexSource(LiteratureSource):
    """OpenAlex works API (polite pool with mailto)."""

    source_id = "openalex"
    display_name = "OpenAlex"
    url = "https://api.openalex.org/works"

    async def search(self, topic: str) -> List[LiteratureRecord]:
        params = {
            "search": topic,
            "per_page": min(self.limit, 50),
            "sort": "cited_by_count:desc",
            "mailto": self.settings.contact_email,
        }
        data = await self._get_json(self.url, params=params)

        records: List[LiteratureRecord] = []
        for item in data.get("results") or []:
            authors = []
            for a in (item.get("authorships") or [])[:10]:
                name = (a.get("author") or {}).get("display_name", "")
                if name:
                    authors.append(name)
            doi_url = item.get("doi") or ""
            doi = doi_url.replace("https://doi.org/", "") if doi_url else None

            venue = None
            location = item.get("primary_location")
            if isinstance(location, dict):
                venue = (location.get("source") or {}).get("display_name")

            open_access = item.get("open_access") or {}
            is_oa = bool(open_access.get("is_oa"))
            citations = item.get("cited_by_count") or 0
            year = item.get("publication_year")
            records.append(LiteratureRecord(
                title=item.get("title") or item.get("display_name") or "",
                authors=authors,
                year=year,
                doi=doi,
                source=self.source_id,
                is_open_access=is_oa,
                quality_score=score_citation_indexed(
                    citations, is_open_access=is_oa, year=year, has_venue=bool(venue),
                ),
                venue=venue,
                url=open_access.get("oa_url") or item.get("id"),
                abstract=_rebuild_inverted_abstract(item.get("abstract_inverted_index")),
                citation_count=citations,
                paper_id=item.get("id"),
            ))
        return records


def _rebuild_inverted_abstract(inv_index: Any) -> Optional[str]:
    """OpenAlex returns abstracts as an inverted index; put the words back in order."""
    if not inv_index or not isinstance(inv_index, dict):
        return None
    word_positions: list[tuple[str, int]] = []
    for word, positions in inv_index.items():
        for pos in positions or []:
            word_positions.append((word, pos))
    word_positions.sort(key=lambda x: x[1])
    return " ".join(w for w, _ in word_positions) or None


class ArxivSource(LiteratureSource):
    """arXiv query API (Atom XML)."""

    source_id = "arxiv"
    display_name = "arXiv"
    url = "https://export.arxiv.org/api/query"

    async def search(self, topic: str) -> List[LiteratureRecord]:
        params = {
            "search_query": f"all:{topic}",
            "start": 0,
            "max_results": min(self.limit, 50),
            "sortBy": "relevance",
        }
        resp = await self.client.get(
            self.url, params=params, timeout=self.settings.literature_provider_timeout,
        )
        resp.raise_for_status()
        return parse_arxiv_feed(resp.text)


def parse_arxiv_feed(xml_text: str, current_year: Optional[int] = None) -> List[LiteratureRecord]:
    """Parse an arXiv Atom feed; relevance falls off with feed position."""
    root = ET.fromstring(xml_text)
    entries = root.findall(f"{{{ATOM_NS}}}entry")
    total = len(entries)

    records: List[LiteratureRecord] = []
    for index, entry in enumerate(entries):
        title = _text(entry, f"{{{ATOM_NS}}}title")
        if not title:
            continue
        authors = [
            name for name in (
                _text(author, f"{{{ATOM_NS}}}name")
                for author in entry.findall(f"{{{ATOM_NS}}}author")
            ) if name
        ]
        published = _text(entry, f"{{{ATOM_NS}}}published")
        year = int(published[:4]) if published and published[:4].isdigit() else None
        abstract = _text(entry, f"{{{ATOM_NS}}}summary")
        doi = _text(entry, f"{{{ARXIV_NS}}}doi")
        journal_ref = _text(entry, f"{{{ARXIV_NS}}}journal_ref")
        abs_url = _text(entry, f"{{{ATOM_NS}}}id")
        arxiv_id = abs_url.rsplit("/abs/", 1)[-1] if abs_url else None

        pdf_url = None
        for link in entry.findall(f"{{{ATOM_NS}}}link"):
            if link.get("title") == "pdf":
                pdf_url = link.get("href")

        relevance = 1.0 - (index / total) if total else 0.0
        records.append(LiteratureRecord(
            title=" ".join(title.split()),
            authors=authors,
            year=year,
            doi=doi,
            source=ArxivSource.source_id,
            is_open_access=True,
            quality_score=score_arxiv(
                relevance,
                year=year,
                has_doi=bool(doi),
                has_abstract=bool(abstract),
                current_year=current_year,
            ),
            venue=journal_ref or "arXiv",
            url=pdf_url or abs_url,
            abstract=abstract,
            citation_count=0,
            paper_id=arxiv_id,
        ))
    return records


def _text(element: ET.Element, tag: str) -> Optional[str]:
    child = element.find(tag)
    if child is None or not child.text:
        return None
    return child.text.strip()


class PubMedSource(LiteratureSource):
    """NCBI E-utilities: esearch for ids, esummary for metadata."""

    source_id = "pubmed"
    display_name = "PubMed"
    search_url = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils/esearch.fcgi"
    summary_url = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils/esummary.fcgi"

    async def search(self, topic: str) -> List[LiteratureRecord]:
        found = await self._get_json(self.search_url, params={
            "db": "pubmed",
            "term": topic,
            "retmode": "json",
            "retmax": min(self.limit, 50),
            "sort": "relevance",
        })
        ids = (found.get("esearchresult") or {}).get("idlist") or []
        if not ids:
            return []

        summary = await self._get_json(self.summary_url, params={
            "db": "pubmed",
            "id": ",".join(ids),
            "retmode": "json",
        })
        result = summary.get("result") or {}

        records: List[LiteratureRecord] = []
        for uid in result.get("uids") or ids:
            item = result.get(uid)
            if not isinstance(item, dict):
                continue
            pubdate = item.get("pubdate") or ""
            match = re.match(r"(\d{4})", pubdate)
            year = int(match.group(1)) if match else None
            doi = None
            for article_id in item.get("articleids") or []:
                if article_id.get("idtype") == "doi":
                    doi = article_id.get("value")
            records.append(LiteratureRecord(
                title=(item.get("title") or "").rstrip("."),
                authors=[a.get("name", "") for a in (item.get("authors") or []) if a.get("name")],
                year=year,
                doi=doi,
                source=self.source_id,
                is_open_access=False,
                quality_score=score_pubmed(year=year, has_doi=bool(doi), has_abstract=False),
                venue=item.get("fulljournalname") or item.get("source"),
                url=f"https://pubmed.ncbi.nlm.nih.gov/{uid}",
                abstract=None,
                citation_count=0,  # PubMed doesn't provide citation counts
                paper_id=uid,
            ))
        return records


class CrossRefSource(LiteratureSource):
    """CrossRef works API."""

    source_id = "crossref"
    display_name = "CrossRef"
    url = "https://api.crossref.org/works"

    async def search(self, topic: str) -> List[LiteratureRecord]:
        params = {
            "query": topic,
            "rows": min(self.limit, 50),
            "sort": "relevance",
            "order": "desc",
            "select": "DOI,URL,title,author,published-print,published-online,"
                      "is-referenced-by-count,abstract,container-title",
        }
        headers = {"User-Agent": f"DocGen/1.0 (mailto:{self.settings.contact_email})"}
        data = await self._get_json(self.url, params=params, headers=headers)

        records: List[LiteratureRecord] = []
        for item in (data.get("message") or {}).get("items") or []:
            authors = []
            for a in (item.get("author") or [])[:10]:
                authors.append(f"{a.get('given', '')} {a.get('family', '')}".strip())
            title_list = item.get("title") or [""]
            pub = item.get("published-print") or item.get("published-online") or {}
            year = None
            date_parts = pub.get("date-parts") or [[]]
            if date_parts and date_parts[0]:
                year = date_parts[0][0]
            container = item.get("container-title") or []
            journal = container[0] if container else None
            abstract_raw = item.get("abstract") or ""
            # CrossRef abstracts often carry JATS XML tags
            abstract = re.sub(r"<[^>]+>", "", abstract_raw).strip() or None
            citations = item.get("is-referenced-by-count") or 0
            doi = item.get("DOI")
            records.append(LiteratureRecord(
                title=title_list[0] if title_list else "",
                authors=authors,
                year=year,
                doi=doi,
                source=self.source_id,
                is_open_access=False,
                quality_score=score_crossref(
                    citations, has_doi=bool(doi), year=year, has_journal=bool(journal),
                ),
                venue=journal,
                url=item.get("URL"),
                abstract=abstract,
                citation_count=citations,
                paper_id=doi,
            ))
        return records


SOURCE_CLASSES = (
    SemanticScholarSource,
    OpenAlexSource,
    ArxivSource,
    PubMedSource,
    CrossRefSource,
)


def default_sources(
    client: httpx.AsyncClient,
    settings: Optional[Settings] = None,
) -> Dict[str, LiteratureSource]:
    """All provider clients keyed by source id, sharing one HTTP client."""
    return {cls.source_id: cls(client, settings) for cls in SOURCE_CLASSES}
