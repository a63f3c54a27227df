"""
Submission pipeline tests - ordering, exactly-once appends and the
best-effort side effects, exercised against a real temporary database.
"""

import json
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from casedesk.core.db import get_db
from casedesk.core.errors import NotFound, RateLimited, Unauthenticated, ValidationRejected
from casedesk.core.rate_limit import RateLimiter
from casedesk.core.redact import REDACTED
from casedesk.core.schema import CASE_STATUSES, OUTPUT_KINDS
from casedesk.core.submission import SubmissionPipeline


def cite(policy, chunk_id="cdd-1"):
    return [{"policyId": policy.id, "chunkId": chunk_id, "quote": "Verify identity before onboarding."}]


class TestAuthenticate:

    def test_missing_key(self, pipeline):
        with pytest.raises(Unauthenticated) as exc:
            pipeline.authenticate(None)
        assert exc.value.code == "missing_api_key"

    def test_unknown_key(self, pipeline):
        with pytest.raises(Unauthenticated) as exc:
            pipeline.authenticate("cd_not-a-real-key")
        assert exc.value.code == "invalid_api_key"

    def test_known_key(self, pipeline, agent, api_key):
        assert pipeline.authenticate(api_key).id == agent.id


class TestSubmitOutput:

    def test_successful_append(self, pipeline, agent, general_case):
        result = pipeline.submit_output(general_case.id, agent, kind="draft", content="  Three alerts open.  ")

        assert result.replayed is False
        assert result.payload["ok"] is True
        assert result.payload["caseId"] == general_case.id
        assert result.payload["outputIndex"] == 0
        assert result.payload["outputTs"].endswith("Z")

        case = pipeline.cases.get(general_case.id)
        assert len(case.outputs) == 1
        assert case.outputs[0].content == "Three alerts open."
        assert case.outputs[0].agent_id == agent.id

        audit = case.audit_trail[-1]
        assert audit.action == "output_posted"
        assert audit.actor_id == agent.id
        assert audit.metadata == {"kind": "draft", "flagsCount": 0, "citationsCount": 0}

    @pytest.mark.parametrize("kind,stored", [
        ("summary", "draft"),
        (None, "draft"),
        (["final"], "draft"),
        ("draft", "draft"),
        ("final", "final"),
    ])
    def test_kind_normalized_to_known_kinds(self, pipeline, agent, general_case, kind, stored):
        pipeline.submit_output(general_case.id, agent, kind=kind, content="x")

        stored_kind = pipeline.cases.get(general_case.id).outputs[0].kind
        assert stored_kind == stored
        assert stored_kind in OUTPUT_KINDS

    def test_flags_stored_as_strings(self, pipeline, agent, general_case):
        pipeline.submit_output(general_case.id, agent, kind="draft", content="x", flags=["needs_review", 3])

        case = pipeline.cases.get(general_case.id)
        assert case.outputs[0].flags == ["needs_review", "3"]
        assert case.audit_trail[-1].metadata["flagsCount"] == 2

    @pytest.mark.parametrize("content", [None, "", "   ", 42, ["text"]])
    def test_content_required(self, pipeline, agent, general_case, content):
        with pytest.raises(ValidationRejected) as exc:
            pipeline.submit_output(general_case.id, agent, kind="draft", content=content)
        assert exc.value.code == "invalid_body"

    def test_unknown_case(self, pipeline, agent):
        with pytest.raises(NotFound):
            pipeline.submit_output("no-such-case", agent, kind="draft", content="x")

    def test_policy_qa_final_without_citations(self, pipeline, agent, policy_case):
        with pytest.raises(ValidationRejected) as exc:
            pipeline.submit_output(policy_case.id, agent, kind="final", content="Yes.")

        assert exc.value.code == "citations_required"
        assert pipeline.cases.get(policy_case.id).outputs == []

    def test_malformed_citations_dropped_then_mandate_applies(self, pipeline, agent, policy_case):
        with pytest.raises(ValidationRejected) as exc:
            pipeline.submit_output(policy_case.id, agent, kind="final", content="Yes.",
                                   citations=[{"policyId": "only-half"}, "junk"])
        assert exc.value.code == "citations_required"

    def test_citation_to_missing_chunk(self, pipeline, agent, policy_case, policy):
        with pytest.raises(ValidationRejected) as exc:
            pipeline.submit_output(policy_case.id, agent, kind="final", content="Yes.",
                                   citations=cite(policy, "nope-0"))

        assert exc.value.code == "invalid_citations"
        assert exc.value.message == f"Chunk nope-0 not found in policy {policy.id}"

    def test_cited_final_accepted(self, pipeline, agent, policy_case, policy):
        result = pipeline.submit_output(policy_case.id, agent, kind="final", content="Yes, senior approval.",
                                        citations=cite(policy, "edd-2"))

        case = pipeline.cases.get(policy_case.id)
        assert result.payload["outputIndex"] == 0
        assert case.outputs[0].kind == "final"
        assert case.outputs[0].citations[0].chunk_id == "edd-2"
        assert case.audit_trail[-1].metadata["citationsCount"] == 1

    def test_draft_without_citations_accepted_for_policy_qa(self, pipeline, agent, policy_case):
        assert pipeline.submit_output(policy_case.id, agent, kind="draft", content="Looking.").payload["ok"]

    def test_outputs_capped_with_index_after_eviction(self, pipeline, agent, general_case):
        capped = SubmissionPipeline(
            cases=pipeline.cases,
            agents=pipeline.agents,
            activity=pipeline.activity,
            idempotency=pipeline.idempotency,
            rate_limiter=RateLimiter(per_minute=100),
            outputs_cap=3,
            audit_cap=4,
        )

        indices = [capped.submit_output(general_case.id, agent, kind="draft", content=f"v{i}").payload["outputIndex"]
                   for i in range(5)]

        case = capped.cases.get(general_case.id)
        assert indices == [0, 1, 2, 2, 2]
        assert [o.content for o in case.outputs] == ["v2", "v3", "v4"]
        assert len(case.audit_trail) == 4


class TestIdempotentSubmission:

    def test_replay_returns_identical_payload_and_appends_once(self, pipeline, agent, general_case):
        first = pipeline.submit_output(general_case.id, agent, kind="draft", content="x", request_id="req-1")
        second = pipeline.submit_output(general_case.id, agent, kind="draft", content="x", request_id="req-1")

        assert second.replayed is True
        assert json.dumps(second.payload) == json.dumps(first.payload)
        case = pipeline.cases.get(general_case.id)
        assert len(case.outputs) == 1
        assert [a.action for a in case.audit_trail].count("output_posted") == 1

    def test_replay_ignores_changed_body(self, pipeline, agent, general_case):
        first = pipeline.submit_output(general_case.id, agent, kind="draft", content="x", request_id="req-1")
        second = pipeline.submit_output(general_case.id, agent, kind="final", content="different", request_id="req-1")

        assert second.payload == first.payload
        assert len(pipeline.cases.get(general_case.id).outputs) == 1

    def test_distinct_request_ids_both_append(self, pipeline, agent, general_case):
        a = pipeline.submit_output(general_case.id, agent, kind="draft", content="x", request_id="req-1")
        b = pipeline.submit_output(general_case.id, agent, kind="draft", content="x", request_id="req-2")

        assert (a.payload["outputIndex"], b.payload["outputIndex"]) == (0, 1)

    def test_no_request_id_never_deduplicates(self, pipeline, agent, general_case):
        pipeline.submit_output(general_case.id, agent, kind="draft", content="x")
        pipeline.submit_output(general_case.id, agent, kind="draft", content="x")
        assert len(pipeline.cases.get(general_case.id).outputs) == 2

    def test_rejected_request_is_not_recorded(self, pipeline, agent, policy_case, policy):
        with pytest.raises(ValidationRejected):
            pipeline.submit_output(policy_case.id, agent, kind="final", content="Yes.", request_id="req-1")

        result = pipeline.submit_output(policy_case.id, agent, kind="final", content="Yes.",
                                        citations=cite(policy), request_id="req-1")
        assert result.replayed is False

    def test_storage_failure_leaves_nothing_and_retry_succeeds(self, pipeline, agent, general_case):
        with patch.object(pipeline.idempotency, "record", side_effect=sqlite3.OperationalError("disk I/O error")):
            with pytest.raises(sqlite3.OperationalError):
                pipeline.submit_output(general_case.id, agent, kind="draft", content="x", request_id="req-1")

        assert pipeline.cases.get(general_case.id).outputs == []

        retry = pipeline.submit_output(general_case.id, agent, kind="draft", content="x", request_id="req-1")
        assert retry.replayed is False
        assert retry.payload["outputIndex"] == 0

    def test_keys_scoped_per_case(self, pipeline, agent, general_case, policy_case):
        pipeline.submit_output(general_case.id, agent, kind="draft", content="x", request_id="req-1")
        other = pipeline.submit_output(policy_case.id, agent, kind="draft", content="x", request_id="req-1")

        assert other.replayed is False
        assert other.payload["caseId"] == policy_case.id


class TestRateLimitedSubmission:

    @pytest.fixture
    def rate_limit_per_minute(self):
        return 2

    def test_third_call_rejected(self, pipeline, agent, general_case):
        pipeline.submit_output(general_case.id, agent, kind="draft", content="a")
        pipeline.submit_output(general_case.id, agent, kind="draft", content="b")

        with pytest.raises(RateLimited) as exc:
            pipeline.submit_output(general_case.id, agent, kind="draft", content="c")

        assert exc.value.retry_after_seconds >= 1
        assert exc.value.to_dict()["retryAfterSeconds"] == exc.value.retry_after_seconds
        assert len(pipeline.cases.get(general_case.id).outputs) == 2

    def test_replays_consume_tokens(self, pipeline, agent, general_case):
        pipeline.submit_output(general_case.id, agent, kind="draft", content="a", request_id="req-1")
        pipeline.submit_output(general_case.id, agent, kind="draft", content="a", request_id="req-1")

        with pytest.raises(RateLimited):
            pipeline.submit_output(general_case.id, agent, kind="draft", content="a", request_id="req-1")

    def test_rate_limit_checked_before_case_lookup(self, pipeline, agent, general_case):
        pipeline.submit_output(general_case.id, agent, kind="draft", content="a")
        pipeline.submit_output(general_case.id, agent, kind="draft", content="b")

        with pytest.raises(RateLimited):
            pipeline.submit_output("no-such-case", agent, kind="draft", content="c")

    def test_rejection_logged_to_activity(self, pipeline, agent, general_case):
        for content in ("a", "b"):
            pipeline.submit_output(general_case.id, agent, kind="draft", content=content)
        with pytest.raises(RateLimited):
            pipeline.submit_output(general_case.id, agent, kind="draft", content="c")

        entries, _ = pipeline.activity.list(limit=100)
        assert "rate_limited" in [e.action for e in entries]

    def test_refill_after_wait(self, pipeline, agent, general_case, clock):
        pipeline.submit_output(general_case.id, agent, kind="draft", content="a")
        pipeline.submit_output(general_case.id, agent, kind="draft", content="b")

        clock.advance(30.0)
        result = pipeline.submit_output(general_case.id, agent, kind="draft", content="c")
        assert result.payload["outputIndex"] == 2


class TestConcurrentSubmission:

    @pytest.fixture
    def rate_limit_per_minute(self):
        return 1000

    def test_parallel_submissions_get_unique_indices(self, pipeline, agent, general_case):
        def submit(i):
            return pipeline.submit_output(general_case.id, agent, kind="draft", content=f"parallel {i}",
                                          request_id=f"req-{i}")

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(submit, range(12)))

        indices = sorted(r.payload["outputIndex"] for r in results)
        assert indices == list(range(12))
        case = pipeline.cases.get(general_case.id)
        assert len(case.outputs) == 12
        assert [a.action for a in case.audit_trail].count("output_posted") == 12

    def test_parallel_retries_append_once(self, pipeline, agent, general_case):
        def submit(_):
            return pipeline.submit_output(general_case.id, agent, kind="draft", content="same",
                                          request_id="shared-token")

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(submit, range(8)))

        assert len({json.dumps(r.payload) for r in results}) == 1
        assert sum(1 for r in results if not r.replayed) == 1
        assert len(pipeline.cases.get(general_case.id).outputs) == 1


class TestBestEffortSideEffects:

    def test_activity_failure_does_not_fail_submission(self, pipeline, agent, general_case, db_path):
        with get_db(db_path) as conn:
            conn.execute("DROP TABLE activity_log")
            conn.commit()

        result = pipeline.submit_output(general_case.id, agent, kind="draft", content="x")

        assert result.payload["ok"] is True
        assert len(pipeline.cases.get(general_case.id).outputs) == 1

    def test_agent_touch_failure_does_not_fail_submission(self, pipeline, agent, general_case):
        with patch("casedesk.core.dao.write_transaction", side_effect=sqlite3.OperationalError("locked")):
            assert pipeline.agents.touch(agent.id, "x") is False

        with patch.object(pipeline.agents, "touch", return_value=False) as touch:
            result = pipeline.submit_output(general_case.id, agent, kind="draft", content="x")

        touch.assert_called_once_with(agent.id, f"posted_output:{general_case.id}")
        assert result.payload["outputIndex"] == 0

    def test_success_updates_agent_and_activity(self, pipeline, agent, general_case):
        pipeline.submit_output(general_case.id, agent, kind="draft", content="x")

        refreshed = pipeline.agents.get(agent.id)
        assert refreshed.last_seen is not None
        assert refreshed.recent_activity[0] == f"posted_output:{general_case.id}"

        entries, total = pipeline.activity.list(case_id=general_case.id)
        assert total == 1
        assert entries[0].action == "case_output_posted"
        assert entries[0].metadata == {"kind": "draft", "flagsCount": 0, "citationsCount": 0}


class TestCreateCase:

    def test_defaults_and_normalization(self, pipeline, agent):
        case = pipeline.create_case(agent, title="  ", case_type="weird", input_value={"alertId": 7}, tags=["aml", 1])

        assert case.title == "Untitled case"
        assert case.type == "general"
        assert case.status == "open"
        assert pipeline.cases.get(case.id).status == CASE_STATUSES[0]
        assert json.loads(case.input) == {"alertId": 7}
        assert case.tags == ["aml", "1"]
        assert case.created_by == agent.id

    def test_audit_redacts_title(self, pipeline, agent):
        case = pipeline.create_case(agent, title="Review jane@example.com", case_type="kyc_triage", input_value="x")

        stored = pipeline.cases.get(case.id)
        assert stored.title == "Review jane@example.com"
        assert stored.audit_trail[0].action == "created"
        assert stored.audit_trail[0].metadata == {"title": f"Review {REDACTED}"}

        entries, _ = pipeline.activity.list(case_id=case.id)
        assert entries[0].metadata["title"] == f"Review {REDACTED}"

    def test_title_too_long(self, pipeline, agent):
        with pytest.raises(ValidationRejected):
            pipeline.create_case(agent, title="x" * 201)

    def test_own_rate_limit_bucket(self, pipeline, agent, rate_limiter):
        pipeline.create_case(agent, title="one")
        assert rate_limiter.tokens(agent.id, "POST /api/cases") == rate_limiter.per_minute - 1
        assert rate_limiter.tokens(agent.id, "POST /api/cases/:id/outputs") is None
