"""
Case submission pipeline.

submit_output runs the components in a fixed order and stops at the first
failure:

    rate limit -> idempotency lookup -> case lookup -> validation
      -> [case transaction: idempotency re-check, append output + audit,
          save, idempotency record] -> best-effort side effects

The append and the idempotency record commit together, so a request that
dies before commit leaves nothing behind and a retry with the same requestId
runs cleanly, while a request that committed is only ever replayed.

The rate check runs once per inbound call, replays included.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .bounded_log import append_audit, append_output
from .citations import CitationValidator, normalize_citations
from .config import (
    CASE_AUDIT_TRAIL_CAP,
    CASE_OUTPUTS_CAP,
    ROUTE_CASE_CREATE,
    ROUTE_CASE_OUTPUTS,
)
from .dao import ActivitySink, AgentDirectory, CaseStore
from .errors import NotFound, RateLimited, Unauthenticated, ValidationRejected
from .idempotency import IdempotencyStore, build_key
from .rate_limit import RateLimiter
from .redact import redact_pii
from .schema import CASE_TYPES, OUTPUT_KINDS, Agent, AuditEntry, Case, OutputEntry, to_iso, utc_now
from ..util.logging import logger

MAX_TITLE_LENGTH = 200


@dataclass(frozen=True)
class SubmissionResult:
    payload: Dict[str, Any]
    replayed: bool = False


class SubmissionPipeline:
    """Sequences admission, deduplication, validation and the bounded append.

    Every collaborator is injected; build_pipeline() wires the SQLite ones.
    """

    def __init__(self, cases: CaseStore, agents: AgentDirectory, activity: ActivitySink,
                 idempotency: IdempotencyStore, rate_limiter: RateLimiter,
                 validator: Optional[CitationValidator] = None,
                 outputs_cap: int = CASE_OUTPUTS_CAP, audit_cap: int = CASE_AUDIT_TRAIL_CAP):
        self.cases = cases
        self.agents = agents
        self.activity = activity
        self.idempotency = idempotency
        self.rate_limiter = rate_limiter
        self.validator = validator or CitationValidator(cases)
        self.outputs_cap = outputs_cap
        self.audit_cap = audit_cap

    def authenticate(self, api_key: Optional[str]) -> Agent:
        if not api_key:
            raise Unauthenticated("Include Authorization: Bearer YOUR_API_KEY", code="missing_api_key")
        agent = self.agents.resolve(api_key)
        if agent is None:
            raise Unauthenticated("Agent not found for API key", code="invalid_api_key")
        return agent

    def _admit(self, agent: Agent, route: str):
        decision = self.rate_limiter.admit(agent.id, route)
        if decision.allowed:
            return
        logger.log_rate_limited(agent.id, route, decision.retry_after_seconds)
        self.activity.log(
            actor_type='agent',
            actor_id=agent.id,
            action='rate_limited',
            metadata={'route': route, 'retryAfterSeconds': decision.retry_after_seconds},
        )
        raise RateLimited(decision.retry_after_seconds, route)

    def submit_output(self, case_id: str, agent: Agent, kind: Any, content: Any,
                      citations: Any = None, flags: Any = None,
                      request_id: Optional[str] = None) -> SubmissionResult:
        """Append one output to a case, at most once per requestId."""
        self._admit(agent, ROUTE_CASE_OUTPUTS)

        request_id = request_id.strip() if isinstance(request_id, str) else None
        idem_key = build_key(agent.id, case_id, request_id) if request_id else None

        if idem_key:
            stored = self.idempotency.lookup(idem_key)
            if stored is not None:
                logger.log_idempotent_replay(case_id, agent.id, request_id)
                return SubmissionResult(payload=stored, replayed=True)

        case = self.cases.get(case_id)
        if case is None:
            raise NotFound(f"Case not found: {case_id}")

        kind = kind if kind in OUTPUT_KINDS else 'draft'
        content = content.strip() if isinstance(content, str) else ''
        if not content:
            raise ValidationRejected("content is required and must be a non-empty string")

        normalized = normalize_citations(citations)
        flag_list = [str(f) for f in flags] if isinstance(flags, (list, tuple)) else []

        check = self.validator.validate(case.type, kind, normalized)
        if not check.valid:
            logger.log_citation_rejection(case_id, agent.id, check.error, check.message)
            raise ValidationRejected(check.message, code=check.error)

        output_ts = utc_now()
        entry = OutputEntry(
            ts=output_ts,
            agent_id=agent.id,
            kind=kind,
            content=content,
            citations=normalized,
            flags=flag_list or None,
        )
        audit_meta = redact_pii({'kind': kind, 'flagsCount': len(flag_list), 'citationsCount': len(normalized)})

        with self.cases.transaction(case_id) as txn:
            if idem_key:
                # A concurrent retry may have committed while we validated
                stored = self.idempotency.lookup(idem_key, conn=txn.conn)
                if stored is not None:
                    logger.log_idempotent_replay(case_id, agent.id, request_id)
                    return SubmissionResult(payload=stored, replayed=True)

            output_index = append_output(txn.case, entry, self.outputs_cap)
            append_audit(txn.case, AuditEntry(
                ts=utc_now(),
                actor_type='agent',
                actor_id=agent.id,
                action='output_posted',
                metadata=audit_meta,
            ), self.audit_cap)
            txn.save()

            payload = {'ok': True, 'caseId': case_id, 'outputIndex': output_index, 'outputTs': to_iso(output_ts)}
            if idem_key:
                payload = self.idempotency.record(
                    idem_key, agent.id, ROUTE_CASE_OUTPUTS, payload, case_id=case_id, conn=txn.conn
                )

        logger.log_output_appended(case_id, agent.id, output_index, kind, len(normalized))

        self.agents.touch(agent.id, f"posted_output:{case_id}")
        self.activity.log(
            actor_type='agent',
            actor_id=agent.id,
            action='case_output_posted',
            case_id=case_id,
            metadata=audit_meta,
        )
        return SubmissionResult(payload=payload)

    def create_case(self, agent: Agent, title: Any = None, case_type: Any = None,
                    input_value: Any = None, tags: Any = None) -> Case:
        """Open a new case on behalf of an agent."""
        self._admit(agent, ROUTE_CASE_CREATE)

        title = (str(title).strip() if title is not None else '') or 'Untitled case'
        if len(title) > MAX_TITLE_LENGTH:
            raise ValidationRejected(f"title must be at most {MAX_TITLE_LENGTH} characters")
        case_type = case_type if case_type in CASE_TYPES else 'general'
        input_text = input_value if isinstance(input_value, str) else json.dumps(input_value or {})
        tag_list = [str(t) for t in tags] if isinstance(tags, (list, tuple)) else []

        created = AuditEntry(
            ts=utc_now(),
            actor_type='agent',
            actor_id=agent.id,
            action='created',
            metadata={'title': redact_pii(title)},
        )
        case = self.cases.create(title, case_type, input_text, agent.id, tags=tag_list, audit_trail=[created])
        logger.log_case_created(case.id, agent.id, case.type)

        self.agents.touch(agent.id, f"create_case:{case.id}")
        self.activity.log(
            actor_type='agent',
            actor_id=agent.id,
            action='case_created',
            case_id=case.id,
            metadata={'title': title, 'type': case_type},
        )
        return case


def build_pipeline(db_path: Optional[str] = None, rate_limiter: Optional[RateLimiter] = None) -> SubmissionPipeline:
    """Wire the pipeline to the SQLite collaborators at db_path (config DB_PATH by default)."""
    cases = CaseStore(db_path)
    return SubmissionPipeline(
        cases=cases,
        agents=AgentDirectory(db_path),
        activity=ActivitySink(db_path),
        idempotency=IdempotencyStore(db_path),
        rate_limiter=rate_limiter or RateLimiter(),
        validator=CitationValidator(cases),
    )
