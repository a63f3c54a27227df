"""
Citation checks for case outputs.

Two stages with different failure philosophies:
- normalize_citations() is lenient and never fails; malformed entries are
  dropped from the working set.
- CitationValidator.validate() is strict and reports typed failures, either
  citations_required (policy_qa final with no citations) or invalid_citations
  (a policy or chunk that does not exist).
"""

from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

from .schema import Citation, Policy

CITATIONS_REQUIRED = "citations_required"
INVALID_CITATIONS = "invalid_citations"


@dataclass(frozen=True)
class CitationCheck:
    """Outcome of CitationValidator.validate."""
    valid: bool
    error: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def ok(cls) -> 'CitationCheck':
        return cls(valid=True)

    @classmethod
    def fail(cls, error: str, message: str) -> 'CitationCheck':
        return cls(valid=False, error=error, message=message)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def normalize_citations(raw: Any) -> List[Citation]:
    """Coerce caller input into citations, silently dropping anything malformed."""
    if not isinstance(raw, (list, tuple)):
        return []

    citations = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        policy_id = _as_text(item.get("policyId"))
        chunk_id = _as_text(item.get("chunkId"))
        if not policy_id or not chunk_id:
            continue
        quote = item.get("quote")
        citations.append(Citation(
            policy_id=policy_id,
            chunk_id=chunk_id,
            quote=str(quote) if quote is not None else None,
        ))
    return citations


class CitationValidator:
    """Enforces citation rules against the current reference documents.

    policy_source needs a get_policy(policy_id) -> Optional[Policy] method;
    CaseStore provides one.
    """

    def __init__(self, policy_source):
        self.policy_source = policy_source

    @staticmethod
    def citations_mandatory(case_type: str, kind: str) -> bool:
        return case_type == "policy_qa" and kind == "final"

    def validate(self, case_type: str, kind: str, citations: Iterable[Citation]) -> CitationCheck:
        citations = list(citations)

        # Mandate first, so "forgot citations" never looks like "bad citations"
        if self.citations_mandatory(case_type, kind) and not citations:
            return CitationCheck.fail(
                CITATIONS_REQUIRED,
                'policy_qa cases require at least one citation when kind is "final". '
                'Add citations that reference a policy chunk.',
            )

        policies = {}
        for citation in citations:
            if citation.policy_id not in policies:
                policies[citation.policy_id] = self.policy_source.get_policy(citation.policy_id)
            policy: Optional[Policy] = policies[citation.policy_id]

            if policy is None:
                return CitationCheck.fail(INVALID_CITATIONS, f"Policy not found: {citation.policy_id}")

            if citation.chunk_id not in policy.chunk_ids():
                return CitationCheck.fail(
                    INVALID_CITATIONS,
                    f"Chunk {citation.chunk_id} not found in policy {citation.policy_id}",
                )

        return CitationCheck.ok()
