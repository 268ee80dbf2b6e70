"""
Decision tracer: the immutable, replayable audit trail.

Two append-only ledgers share one StateBackend:

    decisions         DecisionRecord per automated decision
    chain_of_thought  ChainOfThoughtStep rows referencing a decision id

plus an aggregate index (``decision_index/totals``) holding per-type and
per-outcome counters, per-type confidence sums and confidence bands, so
``counters()`` and ``stats()`` never scan the log.

Queries, replay and export are read-only scans of the ledgers.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from routeguard.events import safe_emit
from routeguard.exceptions import (
    DecisionNotFoundError,
    InputValidationError,
    UnsupportedExportFormatError,
)
from routeguard.models import (
    ChainOfThoughtStep,
    DecisionRecord,
    DecisionReplay,
    DecisionType,
    Stage1Result,
    parse_timestamp,
    utc_now_iso,
)
from routeguard.prefilter import MAX_SCORE
from routeguard.protocols import EventSink, StateBackend
from routeguard.store import InMemoryBackend

logger = logging.getLogger(__name__)

LOG_DECISIONS = "decisions"
LOG_CHAIN_OF_THOUGHT = "chain_of_thought"
NS_DECISION_INDEX = "decision_index"
KEY_TOTALS = "totals"

EXPORT_FORMATS = ["json", "csv", "audit"]
CSV_COLUMNS = ["id", "timestamp", "decision_type", "outcome", "confidence", "rationale"]

HIGH_CONFIDENCE = 0.90
MEDIUM_CONFIDENCE = 0.70


def confidence_band(confidence: float) -> str:
    if confidence >= HIGH_CONFIDENCE:
        return "high"
    if confidence >= MEDIUM_CONFIDENCE:
        return "medium"
    return "low"


def _empty_index() -> dict[str, Any]:
    return {
        "total": 0,
        "by_type": {},
        "by_outcome": {},
        "confidence_sum_by_type": {},
        "confidence_bands": {"high": 0, "medium": 0, "low": 0},
        "last_updated": None,
    }


def _as_datetime(value: Optional[str | datetime], field_name: str) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError) as e:
        raise InputValidationError(field_name, f"not an ISO timestamp: {value!r}") from e


class DecisionTracer:
    """Append-only decision and chain-of-thought ledgers with O(1) counters."""

    def __init__(
        self,
        backend: Optional[StateBackend] = None,
        event_sink: Optional[EventSink] = None,
    ):
        self.backend: StateBackend = backend if backend is not None else InMemoryBackend()
        self.event_sink = event_sink

    # -- writes --------------------------------------------------------------

    def log_decision(
        self,
        decision_type: DecisionType | str,
        outcome: str,
        rationale: str,
        confidence: float,
        context: Optional[dict[str, Any]] = None,
        decision_id: Optional[str] = None,
    ) -> DecisionRecord:
        """Append a decision and bump the aggregate counters.

        The record append and the counter update are separate effects; a
        crash between them can leave the counters one behind the ledger.

        Raises:
            InputValidationError: On an empty type/outcome or a confidence
                outside [0, 1].
        """
        if isinstance(decision_type, DecisionType):
            decision_type = decision_type.value
        if not isinstance(decision_type, str) or not decision_type:
            raise InputValidationError("decision_type", "must be a non-empty string")
        if not isinstance(outcome, str) or not outcome:
            raise InputValidationError("outcome", "must be a non-empty string")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            raise InputValidationError("confidence", "must be a number")
        if not 0.0 <= confidence <= 1.0:
            raise InputValidationError("confidence", "must be within [0, 1]")
        if context is not None and not isinstance(context, dict):
            raise InputValidationError("context", "must be a dict")

        record = DecisionRecord(
            id=decision_id or uuid.uuid4().hex,
            decision_type=decision_type,
            outcome=outcome,
            rationale=rationale,
            confidence=float(confidence),
            context=dict(context or {}),
        )
        self.backend.append(LOG_DECISIONS, record.to_dict())
        self.backend.update(NS_DECISION_INDEX, KEY_TOTALS, lambda idx: _count(idx, record))

        logger.debug(
            f"Decision {record.id} {record.decision_type}={record.outcome} "
            f"confidence={record.confidence:.2f}"
        )
        safe_emit(
            self.event_sink,
            "decision",
            {
                "id": record.id,
                "decision_type": record.decision_type,
                "outcome": record.outcome,
                "confidence": record.confidence,
            },
        )
        return record

    def log_chain_of_thought(
        self,
        decision_id: str,
        step: int,
        description: str,
        reasoning: str = "",
        data: Optional[dict[str, Any]] = None,
    ) -> ChainOfThoughtStep:
        """Append one reasoning step for a decision."""
        if not isinstance(decision_id, str) or not decision_id:
            raise InputValidationError("decision_id", "must be a non-empty string")
        if isinstance(step, bool) or not isinstance(step, int) or step < 1:
            raise InputValidationError("step", "must be a positive integer")
        entry = ChainOfThoughtStep(
            decision_id=decision_id,
            step=step,
            description=description,
            reasoning=reasoning,
            data=dict(data or {}),
        )
        self.backend.append(LOG_CHAIN_OF_THOUGHT, entry.to_dict())
        return entry

    # -- reads ---------------------------------------------------------------

    def _decisions(self) -> list[DecisionRecord]:
        return [DecisionRecord.from_dict(r) for r in self.backend.read_log(LOG_DECISIONS)]

    def counters(self) -> dict[str, Any]:
        current = self.backend.get(NS_DECISION_INDEX, KEY_TOTALS)
        return current.value if current else _empty_index()

    def recent(self, n: int = 10) -> list[DecisionRecord]:
        """The ``n`` most recently appended decisions, oldest first."""
        if isinstance(n, bool) or not isinstance(n, int) or n < 0:
            raise InputValidationError("n", "must be a non-negative integer")
        return [DecisionRecord.from_dict(r) for r in self.backend.read_log(LOG_DECISIONS, n)]

    def query_decisions(
        self,
        decision_type: Optional[DecisionType | str] = None,
        outcome: Optional[str] = None,
        since: Optional[str | datetime] = None,
        until: Optional[str | datetime] = None,
        limit: Optional[int] = None,
    ) -> list[DecisionRecord]:
        """Filter decisions; with ``limit`` only the newest matches are kept.

        Results are in append order. ``since`` is inclusive, ``until``
        exclusive.
        """
        if isinstance(decision_type, DecisionType):
            decision_type = decision_type.value
        start = _as_datetime(since, "since")
        end = _as_datetime(until, "until")
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 0):
            raise InputValidationError("limit", "must be a non-negative integer")

        matches = []
        for record in self._decisions():
            if decision_type is not None and record.decision_type != decision_type:
                continue
            if outcome is not None and record.outcome != outcome:
                continue
            if start is not None or end is not None:
                ts = parse_timestamp(record.timestamp)
                if start is not None and ts < start:
                    continue
                if end is not None and ts >= end:
                    continue
            matches.append(record)

        if limit is not None:
            matches = matches[-limit:] if limit else []
        return matches

    def chain_of_thought(self, decision_id: str) -> list[ChainOfThoughtStep]:
        steps = [
            ChainOfThoughtStep.from_dict(r)
            for r in self.backend.read_log(LOG_CHAIN_OF_THOUGHT)
            if r.get("decision_id") == decision_id
        ]
        return sorted(steps, key=lambda s: s.step)

    def replay(self, decision_id: str) -> DecisionReplay:
        """Reconstruct a decision with its reasoning steps ordered by step number.

        Raises:
            DecisionNotFoundError: If no decision with that id was logged.
        """
        for record in self._decisions():
            if record.id == decision_id:
                return DecisionReplay(decision=record, steps=self.chain_of_thought(decision_id))
        raise DecisionNotFoundError(decision_id)

    # -- export and stats ----------------------------------------------------

    def export(
        self,
        export_format: str = "json",
        start: Optional[str | datetime] = None,
        end: Optional[str | datetime] = None,
        path: Optional[str | Path] = None,
    ) -> str:
        """Export a filtered snapshot of the audit trail.

        Formats:
            json   list of decisions in the time range
            csv    one row per decision (id, timestamp, type, outcome,
                   confidence, rationale)
            audit  decisions plus their chain-of-thought steps and an
                   export timestamp, for compliance review

        The rendered text is returned and, when ``path`` is given, written
        to that file as well.
        """
        if export_format not in EXPORT_FORMATS:
            raise UnsupportedExportFormatError(export_format, EXPORT_FORMATS)
        decisions = self.query_decisions(since=start, until=end)

        if export_format == "json":
            text = json.dumps([d.to_dict() for d in decisions], indent=2)
        elif export_format == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, lineterminator="\n")
            writer.writerow(CSV_COLUMNS)
            for d in decisions:
                writer.writerow(
                    [d.id, d.timestamp, d.decision_type, d.outcome, d.confidence, d.rationale]
                )
            text = buffer.getvalue()
        else:
            ids = {d.id for d in decisions}
            steps = [
                r for r in self.backend.read_log(LOG_CHAIN_OF_THOUGHT) if r.get("decision_id") in ids
            ]
            text = json.dumps(
                {
                    "decisions": [d.to_dict() for d in decisions],
                    "chain_of_thought": steps,
                    "exported_at": utc_now_iso(),
                },
                indent=2,
            )

        if path is not None:
            out = Path(path)
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_text(text)
            logger.info(f"Exported {len(decisions)} decisions as {export_format} to {out}")
        return text

    def stats(self) -> dict[str, Any]:
        """Totals per type (with mean confidence), per outcome, and by confidence band."""
        index = self.counters()
        by_type = {
            decision_type: {
                "count": count,
                "avg_confidence": round(
                    index["confidence_sum_by_type"].get(decision_type, 0.0) / count, 4
                )
                if count
                else 0.0,
            }
            for decision_type, count in index["by_type"].items()
        }
        return {
            "total_decisions": index["total"],
            "by_type": by_type,
            "by_outcome": dict(index["by_outcome"]),
            "confidence_distribution": dict(index["confidence_bands"]),
            "last_updated": index.get("last_updated"),
        }

    # -- composite traces ----------------------------------------------------

    def trace_routing_decision(
        self,
        outcome: str,
        confidence: float,
        stage1: Optional[Stage1Result] = None,
        complexity: Optional[int] = None,
        pattern: Optional[str] = None,
        agents: Optional[list[str]] = None,
        prompt: str = "",
    ) -> DecisionRecord:
        """Log an ``auto_routing`` decision plus its reasoning steps under one id.

        ``outcome`` is usually ``approved``, ``skipped`` or ``pending_approval``.
        """
        score = stage1.signals.score if stage1 is not None else None
        score_text = f"{score}/{MAX_SCORE}" if score is not None else "n/a"
        if outcome == "approved":
            rationale = (
                f"Stage 1 score: {score_text}, complexity: {complexity}, "
                "auto-approved based on learned thresholds"
            )
        elif outcome == "skipped":
            threshold = stage1.threshold if stage1 is not None else "?"
            rationale = (
                f"Stage 1 score: {score_text} (< {threshold}), "
                "pre-filter determined prompt not complex enough for multi-agent"
            )
        else:
            rationale = (
                f"Stage 1 score: {score_text}, complexity: {complexity}, "
                "presenting to user for approval"
            )

        preview = prompt[:100] + ("..." if len(prompt) > 100 else "")
        record = self.log_decision(
            DecisionType.AUTO_ROUTING,
            outcome,
            rationale,
            confidence,
            context={
                "prompt_preview": preview,
                "stage1_score": score,
                "complexity": complexity,
                "pattern": pattern,
                "agents": list(agents or []),
            },
        )

        self.log_chain_of_thought(
            record.id,
            1,
            "Stage 1 pre-filter analysis",
            "Analyzed prompt signals: token budget, keyword density, "
            "multi-domain detection, complexity vocabulary, length",
            stage1.signals.to_dict() if stage1 is not None else {},
        )
        if complexity is not None:
            self.log_chain_of_thought(
                record.id,
                2,
                "Complexity analysis",
                "Scored task complexity and recommended a coordination pattern",
                {"complexity": complexity},
            )
            self.log_chain_of_thought(
                record.id,
                3,
                "Agent selection",
                "Ranked candidates by learned fitness and selected the top agents",
                {"agents": list(agents or []), "pattern": pattern, "confidence": confidence},
            )
        return record

    def trace_cleanup_decision(
        self, trigger: str, safety_checks: str, outcome: str, confidence: float
    ) -> DecisionRecord:
        if outcome == "approved":
            rationale = f"Trigger: {trigger}, all safety checks passed: {safety_checks}"
        else:
            rationale = f"Trigger: {trigger}, safety blocker detected: {safety_checks}"
        return self.log_decision(
            DecisionType.AUTO_CLEANUP,
            outcome,
            rationale,
            confidence,
            context={"trigger": trigger, "safety_checks": safety_checks},
        )


def _count(index: Optional[dict[str, Any]], record: DecisionRecord) -> dict[str, Any]:
    index = index or _empty_index()
    index["total"] += 1
    by_type = index["by_type"]
    by_type[record.decision_type] = by_type.get(record.decision_type, 0) + 1
    by_outcome = index["by_outcome"]
    by_outcome[record.outcome] = by_outcome.get(record.outcome, 0) + 1
    sums = index["confidence_sum_by_type"]
    sums[record.decision_type] = sums.get(record.decision_type, 0.0) + record.confidence
    index["confidence_bands"][confidence_band(record.confidence)] += 1
    index["last_updated"] = record.timestamp
    return index


__all__ = [
    "DecisionTracer",
    "EXPORT_FORMATS",
    "CSV_COLUMNS",
    "confidence_band",
    "LOG_DECISIONS",
    "LOG_CHAIN_OF_THOUGHT",
]
