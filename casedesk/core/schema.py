"""
Case records - dataclasses for cases, their bounded logs and reference data.
Wire format (to_dict) uses the camelCase field names agents already send.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

CASE_TYPES = ('kyc_triage', 'compliance_memo', 'policy_qa', 'general')
CASE_STATUSES = ('open', 'in_progress', 'pending_review', 'closed')
OUTPUT_KINDS = ('draft', 'final')


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(ts: datetime) -> str:
    """Millisecond ISO-8601 in UTC with a trailing Z, e.g. 2025-01-02T03:04:05.678Z."""
    return ts.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def from_iso(value: str) -> datetime:
    # fromisoformat only accepts a trailing Z from Python 3.11 on
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class Citation:
    policy_id: str
    chunk_id: str
    quote: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {'policyId': self.policy_id, 'chunkId': self.chunk_id}
        if self.quote is not None:
            data['quote'] = self.quote
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Citation':
        return cls(policy_id=data['policyId'], chunk_id=data['chunkId'], quote=data.get('quote'))


@dataclass(frozen=True)
class OutputEntry:
    ts: datetime
    agent_id: str
    kind: str  # draft, final
    content: str
    citations: List[Citation] = field(default_factory=list)
    flags: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'ts': to_iso(self.ts),
            'agentId': self.agent_id,
            'kind': self.kind,
            'content': self.content,
            'citations': [c.to_dict() for c in self.citations],
        }
        if self.flags:
            data['flags'] = list(self.flags)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OutputEntry':
        return cls(
            ts=from_iso(data['ts']),
            agent_id=data.get('agentId', ''),
            kind=data.get('kind', 'draft'),
            content=data['content'],
            citations=[Citation.from_dict(c) for c in data.get('citations', [])],
            flags=data.get('flags'),
        )


@dataclass(frozen=True)
class AuditEntry:
    ts: datetime
    actor_type: str  # agent, system
    action: str
    actor_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {'ts': to_iso(self.ts), 'actorType': self.actor_type, 'action': self.action}
        if self.actor_id is not None:
            data['actorId'] = self.actor_id
        if self.metadata is not None:
            data['metadata'] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEntry':
        return cls(
            ts=from_iso(data['ts']),
            actor_type=data.get('actorType', 'agent'),
            action=data['action'],
            actor_id=data.get('actorId'),
            metadata=data.get('metadata'),
        )


@dataclass
class Case:
    id: str
    title: str
    type: str
    status: str
    input: str
    created_at: datetime
    updated_at: datetime
    outputs: List[OutputEntry] = field(default_factory=list)
    audit_trail: List[AuditEntry] = field(default_factory=list)
    created_by: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'type': self.type,
            'status': self.status,
            'input': self.input,
            'outputs': [o.to_dict() for o in self.outputs],
            'auditTrail': [a.to_dict() for a in self.audit_trail],
            'createdBy': self.created_by,
            'tags': list(self.tags),
            'createdAt': to_iso(self.created_at),
            'updatedAt': to_iso(self.updated_at),
        }


@dataclass(frozen=True)
class PolicyChunk:
    id: str
    text: str
    title: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {'id': self.id, 'text': self.text}
        if self.title is not None:
            data['title'] = self.title
        return data


@dataclass
class Policy:
    id: str
    name: str
    version: str
    chunks: List[PolicyChunk]
    created_at: datetime

    def chunk_ids(self) -> set:
        return {chunk.id for chunk in self.chunks}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'version': self.version,
            'chunks': [c.to_dict() for c in self.chunks],
            'createdAt': to_iso(self.created_at),
        }


@dataclass
class Agent:
    id: str
    name: str
    description: str
    created_at: datetime
    last_seen: Optional[datetime] = None
    recent_activity: List[str] = field(default_factory=list)


@dataclass
class ActivityEntry:
    id: int
    ts: datetime
    actor_type: str
    action: str
    actor_id: Optional[str] = None
    case_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'ts': to_iso(self.ts),
            'actorType': self.actor_type,
            'actorId': self.actor_id,
            'action': self.action,
            'caseId': self.case_id,
            'metadata': self.metadata,
        }


@dataclass
class IdempotencyRecord:
    key: str
    agent_id: str
    route: str
    response: Dict[str, Any]
    created_at: datetime
    case_id: Optional[str] = None
