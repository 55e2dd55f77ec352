"""Convergence and oscillation detection across loop iterations.

A :class:`ConvergenceAnalyzer` is owned by exactly one loop run. It keeps
two bounded histories:

- iteration records (files modified, response fingerprint), and
- tree snapshots: a full ``path -> content hash`` map of the tracked tree
  taken once per iteration.

``check_convergence`` runs its detectors in a fixed order and returns the
first verdict that fires:

1. no changes       -- trailing zero-change iterations   (converged, 1.0)
2. oscillation      -- tree flips between 2 or 3 states (NOT converged)
3. stability        -- last three snapshots identical    (converged, 0.95)
4. diminishing      -- change counts shrinking to <= 1   (converged, 0.85)

Detectors never raise; missing history simply means "not converged".
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 10

# How many trailing iterations the no-change and confidence checks look at.
RECENT_WINDOW = 3

TreeSnapshot = Dict[str, str]


def hash_string(text: str) -> str:
    """Stable content fingerprint (sha256 hex digest)."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def snapshots_equal(a: Mapping[str, str], b: Mapping[str, str]) -> bool:
    """Order-independent equality: same keys, same fingerprint per key."""
    if len(a) != len(b):
        return False
    for path, digest in a.items():
        if b.get(path) != digest:
            return False
    return True


@dataclass
class SnapshotDelta:
    changed: int = 0
    unchanged: int = 0
    added: int = 0
    removed: int = 0


def compare_snapshots(old: Mapping[str, str], new: Mapping[str, str]) -> SnapshotDelta:
    """Count changed, unchanged, added and removed paths between two snapshots."""
    delta = SnapshotDelta()
    for path, digest in old.items():
        if path not in new:
            delta.removed += 1
        elif new[path] != digest:
            delta.changed += 1
        else:
            delta.unchanged += 1
    for path in new:
        if path not in old:
            delta.added += 1
    return delta


@dataclass(frozen=True)
class IterationRecord:
    iteration: int
    files_modified: int
    files_list: List[str]
    response_hash: str
    timestamp: float


@dataclass
class OscillationResult:
    detected: bool = False
    pattern: Optional[str] = None  # alternating|cycling
    states: int = 0
    message: str = ""


@dataclass
class ConvergenceVerdict:
    """Outcome of :meth:`ConvergenceAnalyzer.check_convergence`.

    Always recomputed from history, never stored.
    """

    converged: bool
    confidence: float
    reason: str
    oscillation: Optional[OscillationResult] = None
    diminishing: Optional[List[int]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "converged": self.converged,
            "confidence": self.confidence,
            "reason": self.reason,
        }
        if self.oscillation is not None:
            out["oscillation"] = asdict(self.oscillation)
        if self.diminishing is not None:
            out["diminishing"] = list(self.diminishing)
        return out


def _not_converged() -> ConvergenceVerdict:
    return ConvergenceVerdict(converged=False, confidence=0.0, reason="")


def _non_increasing(values: Sequence[int]) -> bool:
    return all(values[i] <= values[i - 1] for i in range(1, len(values)))


@dataclass
class ConvergenceAnalyzer:
    """Per-run convergence state with bounded histories."""

    history_size: int = DEFAULT_HISTORY_SIZE
    iterations: Deque[IterationRecord] = field(init=False)
    snapshots: Deque[TreeSnapshot] = field(init=False)
    current: TreeSnapshot = field(init=False)

    def __post_init__(self) -> None:
        if self.history_size < 4:
            raise ValueError(f"history_size must be >= 4, got {self.history_size}")
        self.reset()

    def reset(self) -> None:
        """Drop all recorded history."""
        self.iterations = deque(maxlen=self.history_size)
        self.snapshots = deque(maxlen=self.history_size)
        self.current = {}

    # -------------------------
    # Recording
    # -------------------------

    def record_iteration(
        self,
        iteration: int,
        files_modified: int = 0,
        files_list: Optional[Iterable[str]] = None,
        response: str = "",
    ) -> IterationRecord:
        record = IterationRecord(
            iteration=iteration,
            files_modified=max(0, int(files_modified)),
            files_list=list(files_list or []),
            response_hash=hash_string(response or ""),
            timestamp=time.time(),
        )
        self.iterations.append(record)
        logger.debug(
            "Recorded iteration %d: %d file(s) modified", iteration, record.files_modified
        )
        return record

    def update_tree_snapshot(self, files: Iterable[Mapping[str, str]]) -> SnapshotDelta:
        """Fingerprint the whole tracked tree and push it onto the history.

        Args:
            files: ``{"path": ..., "content": ...}`` items for every tracked file

        Returns:
            The delta against the previous snapshot
        """
        snapshot: TreeSnapshot = {f["path"]: hash_string(f["content"]) for f in files}
        self.snapshots.append(dict(snapshot))

        previous = self.current
        self.current = snapshot
        delta = compare_snapshots(previous, snapshot)
        logger.debug(
            "Tree snapshot: %d changed, %d added, %d removed, %d unchanged",
            delta.changed,
            delta.added,
            delta.removed,
            delta.unchanged,
        )
        return delta

    # -------------------------
    # Detectors
    # -------------------------

    def _recent(self, n: int) -> List[IterationRecord]:
        return list(self.iterations)[-n:]

    def check_no_changes(self) -> ConvergenceVerdict:
        recent = self._recent(RECENT_WINDOW)
        if not recent:
            return _not_converged()

        if recent[-1].files_modified == 0:
            streak = 0
            for record in reversed(recent):
                if record.files_modified != 0:
                    break
                streak += 1
            if streak >= 2:
                return ConvergenceVerdict(
                    converged=True,
                    confidence=1.0,
                    reason=f"No file modifications for {streak} consecutive iterations",
                )

        if len(recent) >= 2 and all(r.files_modified == 0 for r in recent):
            return ConvergenceVerdict(
                converged=True,
                confidence=1.0,
                reason=f"No file modifications for {len(recent)} iterations",
            )

        return _not_converged()

    def check_oscillation(self) -> OscillationResult:
        if len(self.snapshots) < 4:
            return OscillationResult()

        s1, s2, s3, s4 = list(self.snapshots)[-4:]
        match_1_3 = snapshots_equal(s1, s3)
        match_2_4 = snapshots_equal(s2, s4)
        differ_1_2 = not snapshots_equal(s1, s2)

        if match_1_3 and match_2_4 and differ_1_2:
            return OscillationResult(
                detected=True,
                pattern="alternating",
                states=2,
                message="Code is oscillating between two states",
            )

        if snapshots_equal(s1, s4) and differ_1_2 and not match_1_3:
            return OscillationResult(
                detected=True,
                pattern="cycling",
                states=3,
                message="Code is cycling through multiple states",
            )

        return OscillationResult()

    def check_stability(self) -> ConvergenceVerdict:
        if len(self.snapshots) < 3:
            return _not_converged()

        recent = list(self.snapshots)[-3:]
        if all(snapshots_equal(s, recent[0]) for s in recent[1:]):
            return ConvergenceVerdict(
                converged=True,
                confidence=0.95,
                reason="File hashes stable for 3 iterations",
            )
        return _not_converged()

    def check_diminishing_changes(self) -> ConvergenceVerdict:
        if len(self.iterations) < 4:
            return _not_converged()

        changes = [r.files_modified for r in self._recent(4)]
        if _non_increasing(changes) and all(c <= 1 for c in changes[-2:]):
            return ConvergenceVerdict(
                converged=True,
                confidence=0.85,
                reason="Changes diminishing to zero",
                diminishing=changes,
            )
        return _not_converged()

    def calculate_confidence(self) -> float:
        """Soft convergence score in [0, 1] for the still-iterating case."""
        if len(self.iterations) < 2:
            return 0.0

        recent = self._recent(RECENT_WINDOW)
        score = 0.3 * sum(1 for r in recent if r.files_modified == 0)

        if _non_increasing([r.files_modified for r in recent]):
            score += 0.2

        if recent[-1].response_hash == recent[-2].response_hash:
            score += 0.3

        return max(0.0, min(score, 1.0))

    def check_convergence(self) -> ConvergenceVerdict:
        if len(self.iterations) < 2:
            return ConvergenceVerdict(
                converged=False, confidence=0.0, reason="Not enough iterations"
            )

        no_changes = self.check_no_changes()
        if no_changes.converged:
            return no_changes

        oscillation = self.check_oscillation()
        if oscillation.detected:
            logger.warning("Oscillation detected: %s", oscillation.message)
            return ConvergenceVerdict(
                converged=False,
                confidence=0.0,
                reason="Oscillation detected",
                oscillation=oscillation,
            )

        stability = self.check_stability()
        if stability.converged:
            return stability

        diminishing = self.check_diminishing_changes()
        if diminishing.converged:
            return diminishing

        return ConvergenceVerdict(
            converged=False,
            confidence=self.calculate_confidence(),
            reason="Still iterating",
        )

    def summary(self) -> Dict[str, Any]:
        """Snapshot of the analysis for session logs."""
        return {
            "total_iterations": len(self.iterations),
            "convergence": self.check_convergence().to_dict(),
            "oscillation": asdict(self.check_oscillation()),
            "recent_changes": [
                {"iteration": r.iteration, "files_modified": r.files_modified}
                for r in self._recent(5)
            ],
        }
