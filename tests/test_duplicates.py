"""Tests for the duplicate detection, auto-merge and review jobs."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import psycopg
import pytest
from factories import make_company, make_person

from contactgraph.config import AutoMergeConfig
from contactgraph.resolution.duplicates import (
    choose_survivor,
    cleanup_stale_candidates,
    get_duplicate_stats,
    list_candidates,
    resolve_candidate,
    run_auto_merge,
    run_duplicate_detection,
)
from contactgraph.resolution.errors import (
    CandidateAlreadyResolvedError,
    CandidateNotFoundError,
    MergeValidationError,
)
from contactgraph.resolution.models import (
    AlreadyMerged,
    CandidateStatus,
    DataQuality,
    DuplicateCandidate,
    DuplicatePair,
    EntityType,
    Found,
    MergeResult,
    NotFound,
    Resolution,
)

_MODULE = "contactgraph.resolution.duplicates"


def _candidate(
    candidate_id: str,
    a: str = "c1",
    b: str = "c2",
    *,
    entity_type: EntityType = EntityType.COMPANY,
    confidence: float = 0.99,
    status: CandidateStatus = CandidateStatus.PENDING,
) -> DuplicateCandidate:
    return DuplicateCandidate(
        id=candidate_id,
        entity_type=entity_type,
        entity_a_id=a,
        entity_b_id=b,
        confidence=confidence,
        match_reasons=["Shared domain"],
        status=status,
    )


def _found(_conn, _entity_type, entity_id):
    return Found(make_company(entity_id, f"Company {entity_id}"))


def _merge_result(primary_id: str, dup_id: str) -> MergeResult:
    return MergeResult(
        surviving_id=primary_id,
        merged_ids=[dup_id],
        audit_log_id="audit-1",
        merged_at=datetime(2025, 6, 1, tzinfo=timezone.utc),
    )


class RecordingConnection:
    """Connection double that notes which top-level transaction block each call ran in."""

    def __init__(self) -> None:
        self.depth = 0
        self.blocks = 0
        self.calls: list[tuple[str, int, int]] = []

    @contextmanager
    def transaction(self):
        self.depth += 1
        if self.depth == 1:
            self.blocks += 1
        try:
            yield
        finally:
            self.depth -= 1

    def record(self, name: str, fn):
        def wrapper(*args, **kwargs):
            self.calls.append((name, self.depth, self.blocks))
            return fn(*args, **kwargs)

        return wrapper

    def blocks_for(self, name: str) -> list[int]:
        return [block for call, _depth, block in self.calls if call == name]


# =========================================================================
# choose_survivor
# =========================================================================


class TestChooseSurvivor:
    def test_higher_quality_wins(self):
        a = make_company("c1", "Acme", quality=DataQuality.PROVISIONAL)
        b = make_company("c2", "Acme", quality=DataQuality.VERIFIED, created_offset_days=30)
        assert choose_survivor(a, b) == (b, a)

    def test_enriched_beats_suggested(self):
        a = make_person("p1", "Jane", "Doe", quality=DataQuality.SUGGESTED)
        b = make_person("p2", "Jane", "Doe", quality=DataQuality.ENRICHED)
        assert choose_survivor(a, b)[0] is b

    def test_equal_quality_older_wins(self):
        a = make_company("c1", "Acme", created_offset_days=10)
        b = make_company("c2", "Acme", created_offset_days=1)
        assert choose_survivor(a, b) == (b, a)

    def test_full_tie_keeps_a(self):
        a = make_company("c1", "Acme")
        b = make_company("c2", "Acme")
        assert choose_survivor(a, b) == (a, b)

    def test_missing_created_at_loses(self):
        a = make_company("c1", "Acme")
        b = make_company("c2", "Acme")
        a_undated = replace(a, created_at=None)
        assert choose_survivor(a_undated, b) == (b, a_undated)


# =========================================================================
# run_auto_merge
# =========================================================================


class TestRunAutoMerge:
    def test_merges_and_resolves(self):
        conn = MagicMock()
        candidates = [_candidate("d1", "c1", "c2")]
        with (
            patch(f"{_MODULE}.fetch_pending_candidates", return_value=candidates) as fetch,
            patch(f"{_MODULE}.lookup_entity", side_effect=_found),
            patch(f"{_MODULE}.merge_entities", return_value=_merge_result("c1", "c2")) as merge,
            patch(f"{_MODULE}.mark_candidate_resolved", return_value=1) as mark,
            patch(f"{_MODULE}.insert_audit_log", return_value="audit-run") as audit,
        ):
            summary = run_auto_merge(conn, "system")

        fetch.assert_called_once_with(conn, 0.98, [EntityType.COMPANY, EntityType.PERSON], 50)
        merge.assert_called_once_with(
            conn, EntityType.COMPANY, "c1", ["c2"], "system", actor_email=None
        )
        mark.assert_called_once_with(conn, "d1", Resolution.MERGED, "system")
        assert (summary.processed, summary.merged, summary.skipped) == (1, 1, 0)
        assert summary.success
        audit.assert_called_once()
        assert audit.call_args.kwargs["action"] == "AUTO_MERGE_RUN"
        assert audit.call_args.kwargs["metadata"]["merged"] == 1

    def test_dry_run_writes_nothing_but_audit(self):
        conn = MagicMock()
        candidates = [_candidate("d1", "c1", "c2"), _candidate("d2", "c3", "c4")]
        with (
            patch(f"{_MODULE}.fetch_pending_candidates", return_value=candidates),
            patch(f"{_MODULE}.lookup_entity", side_effect=_found),
            patch(f"{_MODULE}.merge_entities") as merge,
            patch(f"{_MODULE}.mark_candidate_resolved") as mark,
            patch(f"{_MODULE}.insert_audit_log", return_value="audit-run") as audit,
        ):
            summary = run_auto_merge(conn, "system", AutoMergeConfig(dry_run=True))

        merge.assert_not_called()
        mark.assert_not_called()
        assert summary.dry_run is True
        assert (summary.processed, summary.merged, summary.skipped) == (2, 0, 2)
        assert audit.call_args.kwargs["metadata"]["config"]["dry_run"] is True

    def test_cap_leaves_remaining_pending(self):
        conn = MagicMock()
        pending = {f"d{i}": _candidate(f"d{i}", f"a{i}", f"b{i}") for i in range(120)}

        def fetch(_conn, _min_conf, _types, limit):
            # Return everything to prove the job enforces the cap itself
            return list(pending.values())

        def mark(_conn, candidate_id, _resolution, _actor):
            return 1 if pending.pop(candidate_id, None) else 0

        with (
            patch(f"{_MODULE}.fetch_pending_candidates", side_effect=fetch),
            patch(f"{_MODULE}.lookup_entity", side_effect=_found),
            patch(f"{_MODULE}.merge_entities", return_value=_merge_result("x", "y")) as merge,
            patch(f"{_MODULE}.mark_candidate_resolved", side_effect=mark),
            patch(f"{_MODULE}.insert_audit_log", return_value="audit-run"),
        ):
            summary = run_auto_merge(conn, "system", AutoMergeConfig(max_merges_per_run=50))

        assert summary.processed == 50
        assert summary.merged == 50
        assert merge.call_count == 50
        assert len(pending) == 70

    def test_stale_candidate_skipped(self):
        conn = MagicMock()

        def lookup(_conn, _type, entity_id):
            if entity_id == "c2":
                return AlreadyMerged("c2", "c9")
            return _found(_conn, _type, entity_id)

        with (
            patch(f"{_MODULE}.fetch_pending_candidates", return_value=[_candidate("d1")]),
            patch(f"{_MODULE}.lookup_entity", side_effect=lookup),
            patch(f"{_MODULE}.merge_entities") as merge,
            patch(f"{_MODULE}.mark_candidate_resolved", return_value=1) as mark,
            patch(f"{_MODULE}.insert_audit_log", return_value="audit-run"),
        ):
            summary = run_auto_merge(conn, "system")

        merge.assert_not_called()
        mark.assert_called_once_with(conn, "d1", Resolution.SKIPPED, "system")
        assert (summary.merged, summary.skipped) == (0, 1)
        assert summary.errors == []

    def test_stale_candidate_untouched_in_dry_run(self):
        conn = MagicMock()
        with (
            patch(f"{_MODULE}.fetch_pending_candidates", return_value=[_candidate("d1")]),
            patch(f"{_MODULE}.lookup_entity", return_value=NotFound("c1")),
            patch(f"{_MODULE}.mark_candidate_resolved") as mark,
            patch(f"{_MODULE}.insert_audit_log", return_value="audit-run"),
        ):
            summary = run_auto_merge(conn, "system", AutoMergeConfig(dry_run=True))

        mark.assert_not_called()
        assert summary.skipped == 1

    def test_failure_isolated_per_candidate(self):
        conn = MagicMock()
        candidates = [_candidate("d1", "c1", "c2"), _candidate("d2", "c3", "c4")]
        with (
            patch(f"{_MODULE}.fetch_pending_candidates", return_value=candidates),
            patch(f"{_MODULE}.lookup_entity", side_effect=_found),
            patch(
                f"{_MODULE}.merge_entities",
                side_effect=[MergeValidationError("locked row moved"), _merge_result("c3", "c4")],
            ),
            patch(f"{_MODULE}.mark_candidate_resolved", return_value=1),
            patch(f"{_MODULE}.insert_audit_log", return_value="audit-run"),
        ):
            summary = run_auto_merge(conn, "system")

        assert summary.processed == 2
        assert summary.merged == 1
        assert summary.errors == [{"candidate_id": "d1", "error": "locked row moved"}]
        assert not summary.success

    def test_concurrently_resolved_candidate_is_an_error(self):
        conn = MagicMock()
        with (
            patch(f"{_MODULE}.fetch_pending_candidates", return_value=[_candidate("d1")]),
            patch(f"{_MODULE}.lookup_entity", side_effect=_found),
            patch(f"{_MODULE}.merge_entities", return_value=_merge_result("c1", "c2")),
            patch(f"{_MODULE}.mark_candidate_resolved", return_value=0),
            patch(f"{_MODULE}.insert_audit_log", return_value="audit-run"),
        ):
            summary = run_auto_merge(conn, "system")

        assert summary.merged == 0
        assert summary.errors[0]["candidate_id"] == "d1"

    def test_database_error_isolated(self):
        conn = MagicMock()
        with (
            patch(f"{_MODULE}.fetch_pending_candidates", return_value=[_candidate("d1")]),
            patch(f"{_MODULE}.lookup_entity", side_effect=psycopg.OperationalError("gone")),
            patch(f"{_MODULE}.insert_audit_log", return_value="audit-run") as audit,
        ):
            summary = run_auto_merge(conn, "system")

        assert summary.errors == [{"candidate_id": "d1", "error": "gone"}]
        audit.assert_called_once()

    def test_entity_type_filter(self):
        conn = MagicMock()
        with (
            patch(f"{_MODULE}.fetch_pending_candidates", return_value=[]) as fetch,
            patch(f"{_MODULE}.insert_audit_log", return_value="audit-run"),
        ):
            run_auto_merge(conn, "system", AutoMergeConfig(entity_types=("person",)))
        assert fetch.call_args.args[2] == [EntityType.PERSON]

    def test_each_statement_runs_in_its_own_top_level_block(self):
        conn = RecordingConnection()
        candidates = [_candidate("d1", "c1", "c2"), _candidate("d2", "c3", "c4")]
        with (
            patch(
                f"{_MODULE}.fetch_pending_candidates",
                side_effect=conn.record("fetch", lambda *a: candidates),
            ),
            patch(f"{_MODULE}.lookup_entity", side_effect=conn.record("lookup", _found)),
            patch(
                f"{_MODULE}.merge_entities",
                side_effect=conn.record("merge", lambda *a, **kw: _merge_result("x", "y")),
            ),
            patch(
                f"{_MODULE}.mark_candidate_resolved",
                side_effect=conn.record("mark", lambda *a: 1),
            ),
            patch(
                f"{_MODULE}.insert_audit_log",
                side_effect=conn.record("audit", lambda *a, **kw: "run"),
            ),
        ):
            summary = run_auto_merge(conn, "system")

        assert summary.merged == 2
        assert all(depth == 1 for _name, depth, _block in conn.calls)
        fetch_block = conn.blocks_for("fetch")[0]
        merge_blocks = conn.blocks_for("merge")
        # The read commits before any merge takes row locks.
        assert fetch_block < merge_blocks[0]
        assert merge_blocks[0] != merge_blocks[1]
        assert conn.blocks_for("mark") == merge_blocks
        assert conn.blocks_for("audit")[0] > merge_blocks[1]


# =========================================================================
# run_duplicate_detection
# =========================================================================


class TestRunDuplicateDetection:
    def test_phases_fail_independently(self):
        conn = MagicMock()
        pair = DuplicatePair(make_company("c1", "Acme"), make_company("c2", "Acme"), 0.85, ["x"])
        with (
            patch(f"{_MODULE}.count_live_companies", return_value=3),
            patch(f"{_MODULE}.count_live_people", return_value=2),
            patch(f"{_MODULE}.find_duplicate_companies", return_value=[pair]),
            patch(
                f"{_MODULE}.find_duplicate_people",
                side_effect=psycopg.OperationalError("people table locked"),
            ),
            patch(f"{_MODULE}.persist_candidates", return_value=(1, [])) as persist,
            patch(f"{_MODULE}.insert_audit_log", return_value="audit-run") as audit,
        ):
            summary = run_duplicate_detection(conn)

        persist.assert_called_once_with(conn, EntityType.COMPANY, [pair])
        assert summary.companies_scanned == 3
        assert summary.people_scanned == 2
        assert summary.company_candidates_found == 1
        assert summary.new_candidates_saved == 1
        assert summary.errors == ["Person detection error: people table locked"]
        assert not summary.success
        assert audit.call_args.kwargs["action"] == "DUPLICATE_DETECTION_RUN"
        assert audit.call_args.kwargs["metadata"]["errors"] == summary.errors

    def test_clean_run(self):
        conn = MagicMock()
        with (
            patch(f"{_MODULE}.count_live_companies", return_value=0),
            patch(f"{_MODULE}.count_live_people", return_value=0),
            patch(f"{_MODULE}.find_duplicate_companies", return_value=[]),
            patch(f"{_MODULE}.find_duplicate_people", return_value=[]),
            patch(f"{_MODULE}.persist_candidates", return_value=(0, [])),
            patch(f"{_MODULE}.insert_audit_log", return_value="audit-run"),
        ):
            summary = run_duplicate_detection(conn, min_confidence=0.8)

        assert summary.success
        assert summary.run_id.startswith("dup-")
        assert summary.completed_at >= summary.started_at


# =========================================================================
# Cleanup and stats
# =========================================================================


class TestCleanupStaleCandidates:
    def test_removes_and_collects_errors(self):
        conn = MagicMock()
        stale = [_candidate("d1"), _candidate("d2")]
        with (
            patch(f"{_MODULE}.find_stale_candidates", return_value=stale),
            patch(
                f"{_MODULE}.delete_candidate",
                side_effect=[1, psycopg.OperationalError("deadlock")],
            ),
        ):
            result = cleanup_stale_candidates(conn)

        assert result.removed == 1
        assert result.errors == ["Failed to remove candidate d2: deadlock"]

    def test_nothing_stale(self):
        with patch(f"{_MODULE}.find_stale_candidates", return_value=[]):
            result = cleanup_stale_candidates(MagicMock())
        assert (result.removed, result.errors) == (0, [])

    def test_read_and_deletes_use_separate_blocks(self):
        conn = RecordingConnection()
        stale = [_candidate("d1"), _candidate("d2")]
        with (
            patch(
                f"{_MODULE}.find_stale_candidates",
                side_effect=conn.record("find", lambda *a: stale),
            ),
            patch(f"{_MODULE}.delete_candidate", side_effect=conn.record("delete", lambda *a: 1)),
        ):
            result = cleanup_stale_candidates(conn)

        assert result.removed == 2
        assert all(depth == 1 for _name, depth, _block in conn.calls)
        assert conn.blocks_for("find") == [1]
        assert conn.blocks_for("delete") == [2, 3]


class TestGetDuplicateStats:
    def test_aggregates(self):
        oldest = datetime(2025, 1, 2, tzinfo=timezone.utc)
        rows = [
            {"status": "PENDING", "entity_type": "COMPANY", "n": 4},
            {"status": "PENDING", "entity_type": "PERSON", "n": 2},
            {"status": "RESOLVED", "entity_type": "COMPANY", "n": 7},
        ]
        with (
            patch(f"{_MODULE}.candidate_counts_by_status", return_value=rows),
            patch(f"{_MODULE}.pending_confidence_summary", return_value=(0.83, oldest)),
        ):
            stats = get_duplicate_stats(MagicMock())

        assert stats.pending == {"companies": 4, "people": 2}
        assert stats.resolved == {"companies": 7, "people": 0}
        assert stats.avg_confidence == pytest.approx(0.83)
        assert stats.oldest_pending == oldest

    def test_empty_queue(self):
        with (
            patch(f"{_MODULE}.candidate_counts_by_status", return_value=[]),
            patch(f"{_MODULE}.pending_confidence_summary", return_value=(0.0, None)),
        ):
            stats = get_duplicate_stats(MagicMock())
        assert stats.pending == {"companies": 0, "people": 0}
        assert stats.oldest_pending is None


# =========================================================================
# Review queue
# =========================================================================


class TestListCandidates:
    def test_filters_and_paging(self):
        conn = MagicMock()
        with patch(f"{_MODULE}._list_candidates", return_value=([], 245)) as repo:
            page = list_candidates(conn, entity_type="company", status="all", page=2, limit=500)

        repo.assert_called_once_with(
            conn,
            entity_type=EntityType.COMPANY,
            status=None,
            min_confidence=0.70,
            offset=100,
            limit=100,
        )
        assert page.limit == 100
        assert page.total == 245
        assert page.total_pages == 3

    def test_defaults_to_pending(self):
        with patch(f"{_MODULE}._list_candidates", return_value=([], 0)) as repo:
            page = list_candidates(MagicMock(), page=0)
        assert repo.call_args.kwargs["status"] is CandidateStatus.PENDING
        assert repo.call_args.kwargs["entity_type"] is None
        assert page.page == 1


class TestResolveCandidate:
    def test_unknown_action(self):
        with pytest.raises(ValueError, match="Unknown review action"):
            resolve_candidate(MagicMock(), "d1", "delete", "user-1")

    def test_missing_candidate(self):
        with (
            patch(f"{_MODULE}.get_candidate", return_value=None),
            pytest.raises(CandidateNotFoundError),
        ):
            resolve_candidate(MagicMock(), "d1", "merge", "user-1")

    def test_already_resolved(self):
        closed = _candidate("d1", status=CandidateStatus.RESOLVED)
        with (
            patch(f"{_MODULE}.get_candidate", return_value=closed),
            pytest.raises(CandidateAlreadyResolvedError),
        ):
            resolve_candidate(MagicMock(), "d1", "not_duplicate", "user-1")

    def test_not_duplicate(self):
        conn = MagicMock()
        with (
            patch(f"{_MODULE}.get_candidate", return_value=_candidate("d1")),
            patch(f"{_MODULE}.mark_candidate_resolved", return_value=1) as mark,
            patch(f"{_MODULE}.merge_entities") as merge,
        ):
            result = resolve_candidate(conn, "d1", "NOT_DUPLICATE", "user-1")

        assert result is None
        mark.assert_called_once_with(conn, "d1", Resolution.NOT_DUPLICATE, "user-1")
        merge.assert_not_called()

    def test_merge_with_explicit_primary(self):
        conn = MagicMock()
        expected = _merge_result("c2", "c1")
        with (
            patch(f"{_MODULE}.get_candidate", return_value=_candidate("d1", "c1", "c2")),
            patch(f"{_MODULE}.lookup_entity", side_effect=_found),
            patch(f"{_MODULE}.merge_entities", return_value=expected) as merge,
            patch(f"{_MODULE}.mark_candidate_resolved", return_value=1) as mark,
        ):
            result = resolve_candidate(
                conn, "d1", "merge", "user-1", primary_id="c2", actor_email="u@x.io"
            )

        assert result is expected
        merge.assert_called_once_with(
            conn, EntityType.COMPANY, "c2", ["c1"], "user-1", actor_email="u@x.io"
        )
        mark.assert_called_once_with(conn, "d1", Resolution.MERGED, "user-1")

    def test_merge_picks_survivor(self):
        conn = MagicMock()

        def lookup(_conn, _type, entity_id):
            quality = DataQuality.VERIFIED if entity_id == "c2" else DataQuality.PROVISIONAL
            return Found(make_company(entity_id, "Acme", quality=quality))

        with (
            patch(f"{_MODULE}.get_candidate", return_value=_candidate("d1", "c1", "c2")),
            patch(f"{_MODULE}.lookup_entity", side_effect=lookup),
            patch(f"{_MODULE}.merge_entities", return_value=_merge_result("c2", "c1")) as merge,
            patch(f"{_MODULE}.mark_candidate_resolved", return_value=1),
        ):
            resolve_candidate(conn, "d1", "merge", "user-1")

        assert merge.call_args.args[2:4] == ("c2", ["c1"])

    def test_primary_outside_pair(self):
        with (
            patch(f"{_MODULE}.get_candidate", return_value=_candidate("d1", "c1", "c2")),
            patch(f"{_MODULE}.lookup_entity", side_effect=_found),
            patch(f"{_MODULE}.merge_entities") as merge,
            pytest.raises(MergeValidationError, match="not part of candidate"),
        ):
            resolve_candidate(MagicMock(), "d1", "merge", "user-1", primary_id="c9")
        merge.assert_not_called()

    def test_merge_of_stale_pair(self):
        with (
            patch(f"{_MODULE}.get_candidate", return_value=_candidate("d1", "c1", "c2")),
            patch(f"{_MODULE}.lookup_entity", return_value=NotFound("c1")),
            pytest.raises(MergeValidationError, match="c1 not found"),
        ):
            resolve_candidate(MagicMock(), "d1", "merge", "user-1")

    def test_candidate_read_commits_before_merge(self):
        conn = RecordingConnection()
        with (
            patch(
                f"{_MODULE}.get_candidate",
                side_effect=conn.record("get", lambda *a: _candidate("d1", "c1", "c2")),
            ),
            patch(f"{_MODULE}.lookup_entity", side_effect=conn.record("lookup", _found)),
            patch(
                f"{_MODULE}.merge_entities",
                side_effect=conn.record("merge", lambda *a, **kw: _merge_result("c1", "c2")),
            ),
            patch(
                f"{_MODULE}.mark_candidate_resolved",
                side_effect=conn.record("mark", lambda *a: 1),
            ),
        ):
            resolve_candidate(conn, "d1", "merge", "user-1")

        assert all(depth == 1 for _name, depth, _block in conn.calls)
        assert conn.blocks_for("get") == [1]
        assert conn.blocks_for("merge") == conn.blocks_for("mark") == [2]
