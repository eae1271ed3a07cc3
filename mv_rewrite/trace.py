"""
Trace: structured record of one rewrite decision, plus explain/JSON output.

Per MV considered the trace keeps the structural, aggregate and freshness
verdicts, the estimated cost and whether it was chosen. Rejections are
kept even when a rewrite happens.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mv_rewrite.pipeline import RewriteResult


class RejectionStage(Enum):
    """Pipeline stage that rejected an MV."""
    STRUCTURAL = "structural"
    AGGREGATE = "aggregate"
    FRESHNESS = "freshness"
    COST = "cost"
    LIMIT = "limit"


@dataclass(frozen=True)
class RejectionReason:
    """Why one MV was not used."""
    mv_name: str
    stage: RejectionStage
    message: str

    def __str__(self) -> str:
        return f"{self.mv_name} [{self.stage.value}] {self.message}"


class StageVerdict(Enum):
    """Outcome of one stage for one MV."""
    PASS = "pass"
    FAIL = "fail"
    NOT_APPLICABLE = "n/a"
    NOT_REACHED = "not reached"


@dataclass
class TraceEntry:
    """
    Verdicts for one MV.

    When the MV matches at several places, the verdicts come from the match
    that became the candidate, or from the first failing match when none
    passed.
    """
    mv_name: str
    structural: StageVerdict = StageVerdict.NOT_REACHED
    aggregate: StageVerdict = StageVerdict.NOT_REACHED
    freshness: StageVerdict = StageVerdict.NOT_REACHED
    cost: float | None = None
    chosen: bool = False
    path: tuple[int, ...] | None = None
    max_lag: int | None = None
    detail: str = ""

    def to_dict(self) -> dict:
        return {
            "mv_name": self.mv_name,
            "structural": self.structural.value,
            "aggregate": self.aggregate.value,
            "freshness": self.freshness.value,
            "cost": self.cost,
            "chosen": self.chosen,
            "path": list(self.path) if self.path is not None else None,
            "max_lag": self.max_lag,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class RewriteTrace:
    """Trace of one rewrite call."""
    snapshot_version: int
    entries: tuple[TraceEntry, ...] = ()
    chosen: str | None = None

    def entry(self, mv_name: str) -> TraceEntry | None:
        """Entry of an MV, None if it was not considered."""
        for e in self.entries:
            if e.mv_name == mv_name:
                return e
        return None

    def to_dict(self) -> dict:
        return {
            "snapshot_version": self.snapshot_version,
            "chosen": self.chosen,
            "entries": [e.to_dict() for e in self.entries],
        }


def format_explain(result: "RewriteResult", dialect: str = "spark") -> str:
    """
    Human-readable explanation of a rewrite result.

    Args:
        result: Rewritten or Unchanged
        dialect: sqlglot dialect used to render expressions

    Returns:
        Multi-line text: decision, per-MV verdicts, rejections, final plan
    """
    from mv_rewrite.sql_render import render_plan

    trace = result.trace
    lines: list[str] = []
    if result.rewritten:
        lines.append(f"REWRITTEN using {result.mv_name} (snapshot {trace.snapshot_version})")
    else:
        lines.append(f"UNCHANGED (snapshot {trace.snapshot_version})")

    if trace.entries:
        lines.append("")
        lines.append(f"{'mv':<24} {'structural':<12} {'aggregate':<12} {'freshness':<12} {'cost':>12}  chosen")
        for e in trace.entries:
            cost = f"{e.cost:.1f}" if e.cost is not None else "-"
            lines.append(
                f"{e.mv_name:<24} {e.structural.value:<12} {e.aggregate.value:<12} "
                f"{e.freshness.value:<12} {cost:>12}  {'*' if e.chosen else ''}"
            )

    if result.rejections:
        lines.append("")
        lines.append("Rejections:")
        for r in result.rejections:
            lines.append(f"  - {r}")

    lines.append("")
    lines.append("Plan:")
    lines.append(render_plan(result.plan, dialect=dialect, indent="  "))
    return "\n".join(lines)


def write_trace(out_dir: Path, result: "RewriteResult", sql: str | None = None) -> Path:
    """
    Write the trace of a rewrite result to rewrite_trace.json.

    Args:
        out_dir: Output directory (created if missing)
        result: Rewrite result
        sql: Query text, recorded when given

    Returns:
        Path to the written file
    """
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / "rewrite_trace.json"

    data = {
        "generated": datetime.now().isoformat(),
        "rewritten": result.rewritten,
        "mv_name": result.mv_name,
        "sql": sql,
        "rejections": [
            {"mv_name": r.mv_name, "stage": r.stage.value, "message": r.message}
            for r in result.rejections
        ],
        "trace": result.trace.to_dict(),
    }
    out_path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    return out_path
