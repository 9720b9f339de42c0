"""Unit tests for literature deduplication and ranking."""

from docgen.ai.academic_search import DedupedPaper, LiteratureRecord
from docgen.orchestration.dedup import dedupe_and_rank, normalize_doi, normalize_title


def rec(title, *, doi=None, year=2020, quality=0.5, source="s2"):
    return LiteratureRecord(title=title, doi=doi, year=year, quality_score=quality, source=source)


class TestNormalization:
    """Tests for dedup key normalization."""

    def test_doi_prefixes_and_case(self):
        """Resolver prefixes are dropped and the DOI lowercased."""
        assert normalize_doi("https://doi.org/10.1234/ABC") == "10.1234/abc"
        assert normalize_doi("http://dx.doi.org/10.1234/abc") == "10.1234/abc"
        assert normalize_doi("doi:10.1234/Abc ") == "10.1234/abc"

    def test_empty_doi(self):
        """Blank DOIs normalize to None."""
        assert normalize_doi("") is None
        assert normalize_doi("   ") is None
        assert normalize_doi(None) is None

    def test_title_casefold_and_whitespace(self):
        """Titles are case-folded and whitespace-collapsed."""
        assert normalize_title("  Deep   Learning\tFor\nImaging ") == "deep learning for imaging"


class TestDedupeAndRank:
    """Tests for dedupe_and_rank."""

    def test_same_doi_keeps_higher_quality(self):
        """Two records with the same DOI collapse to the higher scoring one."""
        low = rec("Paper A", doi="10.1/x", quality=0.4, source="crossref")
        high = rec("Paper A (preprint)", doi="https://doi.org/10.1/X", quality=0.8, source="openalex")
        result = dedupe_and_rank([low, high])
        assert len(result) == 1
        assert result[0].source == "openalex"
        assert result[0].quality_score == 0.8
        assert isinstance(result[0], DedupedPaper)

    def test_title_year_match_without_doi(self):
        """Records without DOIs merge on normalized title plus year."""
        a = rec("Neural Tutors", year=2021, quality=0.5)
        b = rec("neural  tutors", year=2021, quality=0.6)
        c = rec("Neural Tutors", year=2019, quality=0.7)
        result = dedupe_and_rank([a, b, c])
        assert len(result) == 2
        assert {p.year for p in result} == {2021, 2019}

    def test_identifier_bearing_record_preferred_on_tie(self):
        """Equal scores: the record with a DOI survives."""
        plain = rec("Shared Title", quality=0.6, source="arxiv")
        with_doi = rec("Shared Title", doi="10.5/abc", quality=0.6, source="crossref")
        result = dedupe_and_rank([plain, with_doi])
        assert len(result) == 1
        assert result[0].doi == "10.5/abc"

    def test_different_dois_are_different_papers(self):
        """Same title and year but distinct DOIs are not merged."""
        a = rec("Editorial", doi="10.1/a")
        b = rec("Editorial", doi="10.1/b")
        assert len(dedupe_and_rank([a, b])) == 2

    def test_record_without_doi_does_not_bridge_two_dois(self):
        """A DOI-less match joins one DOI group only; both DOIs survive."""
        a = rec("Deep Nets", doi="10.1/a", quality=0.5)
        b = rec("Deep Nets", doi="10.1/b", quality=0.6)
        c = rec("Deep Nets", quality=0.4)
        result = dedupe_and_rank([a, b, c])
        assert [(p.doi, p.quality_score) for p in result] == [("10.1/b", 0.6), ("10.1/a", 0.5)]

    def test_merging_is_transitive(self):
        """A~B by DOI and B~C by title+year collapse into one survivor."""
        a = rec("Original Title", doi="10.9/t", quality=0.3)
        b = rec("Other Title", doi="10.9/T", quality=0.4)
        c = rec("Other Title", quality=0.9)
        result = dedupe_and_rank([a, b, c])
        assert len(result) == 1
        assert result[0].quality_score == 0.9

    def test_ranking_quality_then_year_then_input_order(self):
        """Sorted by quality desc, year desc; full ties keep provider order."""
        records = [
            rec("first tie", quality=0.5, year=2020),
            rec("newer", quality=0.5, year=2023),
            rec("best", quality=0.9, year=2001),
            rec("second tie", quality=0.5, year=2020),
        ]
        titles = [p.title for p in dedupe_and_rank(records)]
        assert titles == ["best", "newer", "first tie", "second tie"]

    def test_min_quality_is_strict_and_cap_applies(self):
        """Papers at exactly the threshold are dropped; the cap trims the tail."""
        records = [rec(f"p{i}", quality=q) for i, q in enumerate([0.3, 0.31, 0.5, 0.9, 0.7])]
        result = dedupe_and_rank(records, min_quality=0.3, max_papers=3)
        assert [p.quality_score for p in result] == [0.9, 0.7, 0.5]

    def test_idempotent(self):
        """Ranking an already ranked list changes nothing."""
        records = [
            rec("A", doi="10.1/a", quality=0.4),
            rec("a", quality=0.6),
            rec("B", doi="10.1/b", quality=0.7, year=2018),
            rec("B dup", doi="doi:10.1/B", quality=0.2),
            rec("C", quality=0.7, year=2022),
            rec("D", doi="10.1/d", quality=0.1),
            rec("", quality=0.5),
            rec("", quality=0.5),
        ]
        once = dedupe_and_rank(records)
        twice = dedupe_and_rank(once)
        assert twice == once

    def test_empty_input(self):
        """No records, no papers."""
        assert dedupe_and_rank([]) == []
