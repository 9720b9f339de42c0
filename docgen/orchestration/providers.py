"""
Provider selection for literature mining.

The provider list is fixed apart from one conditional member: PubMed joins
when the document's field of study looks medical.
"""

from typing import List, Optional

# Case-insensitive substring match, so "Clinical Biochemistry Research" matches
# "biochemistry" (and "biology" matches inside "microbiology").
MEDICAL_KEYWORDS = (
    "medicine",
    "health",
    "biology",
    "biochemistry",
    "pharmacology",
    "nursing",
    "public health",
    "epidemiology",
    "medical",
)

SEMANTIC_SCHOLAR = "semantic_scholar"
OPENALEX = "openalex"
ARXIV = "arxiv"
PUBMED = "pubmed"
CROSSREF = "crossref"


def is_medical_field(field_of_study: Optional[str]) -> bool:
    """True if any medical keyword occurs anywhere in the field of study."""
    if not field_of_study:
        return False
    text = field_of_study.casefold()
    return any(keyword in text for keyword in MEDICAL_KEYWORDS)


def providers_for(field_of_study: Optional[str]) -> List[str]:
    """
    Ordered provider ids to query for a document.

    General-purpose providers come first, the medical provider only when
    applicable, and the citation index last.
    """
    providers = [SEMANTIC_SCHOLAR, OPENALEX, ARXIV]
    if is_medical_field(field_of_study):
        providers.append(PUBMED)
    providers.append(CROSSREF)
    return providers
