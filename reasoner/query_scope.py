RELATION_HINTS = (
    "related",
    "relationship",
    "relationships",
    "compare",
    "comparison",
    "differences",
    "similarities",
    "across",
    "between",
    "connect",
    "overlap",
    "fit together",
    "how they",
)
MULTI_DOC_HINTS = (
    "files",
    "documents",
    "docs",
    "papers",
    "slides",
    "presentations",
    "sources",
    "these files",
    "these documents",
    "all files",
    "all documents",
)
SINGLE_DOC_HINTS = ("this file", "this document", "this slide", "slide ", "page ", "section ")


def _contains_any(text: str, hints) -> bool:
    return any(hint in text for hint in hints)


def requires_project_scope(query: str) -> bool:
    """True when the question asks about several documents at once."""
    text = f" {query.lower().strip()} "
    relation = _contains_any(text, RELATION_HINTS)
    multi_doc = _contains_any(text, MULTI_DOC_HINTS)
    single_doc = _contains_any(text, SINGLE_DOC_HINTS)
    plural_pronoun = " they " in text or " them " in text

    if multi_doc and (relation or plural_pronoun):
        return True
    if "across documents" in text or "across files" in text:
        return True
    if relation and plural_pronoun:
        return True
    return relation and multi_doc and not single_doc
