"""Pattern distillation from session records.

Groups recent outcomes by action signature and turns each sufficiently
sampled group into a pattern scored by:
- the lower bound of a 95% Wilson score interval on its success rate
- exponential time decay of that bound since the pattern was last seen
- a reliability label from confidence and sample size
"""
from __future__ import annotations

import json
import logging
import math
import os
import threading
import time
from collections import Counter
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

from pydantic import ValidationError

from ..persistence import write_json_atomic
from ..schemas import (
    CompactContext,
    Pattern,
    PatternStats,
    PatternTrigger,
    Reliability,
    SessionRecord,
)

logger = logging.getLogger(__name__)

PATTERN_FILE_VERSION = 2
WILSON_Z = 1.96
DAY_MS = 24 * 60 * 60 * 1000

TRIGGER_SHARE = 0.6
MAX_TRIGGER_ITEMS = 3
MAX_TRIGGER_BLOCKS = 3
MAX_TRIGGER_ENTITIES = 2
LOW_VITALS = 10
HIGH_VITALS = 15
MAX_VITALS = 20


def _now_ms() -> int:
    return int(time.time() * 1000)


def wilson_lower_bound(successes: int, attempts: int, z: float = WILSON_Z) -> float:
    """Lower bound of the Wilson score interval for a binomial proportion.

    Penalizes small samples: 1/1 scores about 0.21 while 90/100 scores about 0.83.
    """
    if attempts <= 0:
        return 0.0

    p = successes / attempts
    n = attempts
    denominator = 1 + z * z / n
    center = p + z * z / (2 * n)
    margin = z * math.sqrt(p * (1 - p) / n + z * z / (4 * n * n))
    return max(0.0, min(1.0, (center - margin) / denominator))


def decayed_score(confidence: float, age_ms: float, half_life_ms: float) -> float:
    """Scale confidence by 0.5 ** (age / half-life)."""
    if half_life_ms <= 0:
        return confidence
    return confidence * math.pow(0.5, max(0.0, age_ms) / half_life_ms)


def classify_reliability(confidence: float, attempts: int) -> Reliability:
    if attempts < 5:
        return "uncertain"
    if confidence >= 0.7 and attempts >= 10:
        return "high"
    if confidence >= 0.5 and attempts >= 7:
        return "medium"
    if confidence >= 0.3:
        return "low"
    return "uncertain"


@dataclass
class DistillerConfig:
    """Configuration for pattern distillation."""

    min_attempts: int = 5
    min_confidence: float = 0.3
    decay_half_life_days: float = 7
    max_patterns: int = 200

    @property
    def half_life_ms(self) -> float:
        return self.decay_half_life_days * DAY_MS

    @classmethod
    def from_env(cls) -> "DistillerConfig":
        return cls(
            min_attempts=int(os.environ.get("TAU_LEARNING_MIN_ATTEMPTS", "5")),
            min_confidence=float(os.environ.get("TAU_LEARNING_MIN_CONFIDENCE", "0.3")),
            decay_half_life_days=float(
                os.environ.get("TAU_LEARNING_DECAY_HALF_LIFE_DAYS", "7")
            ),
            max_patterns=int(os.environ.get("TAU_LEARNING_MAX_PATTERNS", "200")),
        )


def _common_values(counts: Counter, threshold: float, limit: int) -> list[str]:
    frequent = [(value, n) for value, n in counts.items() if n >= threshold]
    frequent.sort(key=lambda item: item[1], reverse=True)
    return [value for value, _ in frequent[:limit]]


def _vitals_range(values: list[float]) -> Optional[tuple[float, float]]:
    if not values:
        return None
    avg = sum(values) / len(values)
    if avg < LOW_VITALS:
        return (0, LOW_VITALS)
    if avg > HIGH_VITALS:
        return (HIGH_VITALS, MAX_VITALS)
    return None


def extract_trigger(entries: Sequence[SessionRecord]) -> PatternTrigger:
    """Context conditions present in at least 60% of the entries."""
    if not entries:
        return PatternTrigger()

    items: Counter = Counter()
    blocks: Counter = Counter()
    entities: Counter = Counter()
    times: Counter = Counter()
    underground = 0
    health: list[float] = []
    food: list[float] = []

    for entry in entries:
        ctx = entry.context
        # A name listed twice in one snapshot still counts once
        items.update(set(ctx.inventory))
        blocks.update(set(ctx.nearby_blocks))
        entities.update(set(ctx.nearby_entities))
        times[ctx.time] += 1
        if ctx.underground:
            underground += 1
        health.append(ctx.health)
        food.append(ctx.food)

    threshold = len(entries) * TRIGGER_SHARE
    common_times = _common_values(times, threshold, 1)

    return PatternTrigger(
        has_items=_common_values(items, threshold, MAX_TRIGGER_ITEMS) or None,
        near_blocks=_common_values(blocks, threshold, MAX_TRIGGER_BLOCKS) or None,
        near_entities=_common_values(entities, threshold, MAX_TRIGGER_ENTITIES) or None,
        time_of_day=common_times[0] if common_times else None,
        underground=True if underground >= threshold else None,
        health_range=_vitals_range(health),
        food_range=_vitals_range(food),
    )


def trigger_match_score(trigger: PatternTrigger, context: CompactContext) -> float:
    """Fraction of the trigger's conditions satisfied by the context."""
    checks = 0
    matches = 0

    if trigger.has_items:
        checks += 1
        if all(any(item in inv for inv in context.inventory) for item in trigger.has_items):
            matches += 1

    if trigger.near_blocks:
        checks += 1
        if any(any(block in b for b in context.nearby_blocks) for block in trigger.near_blocks):
            matches += 1

    if trigger.near_entities:
        checks += 1
        if any(
            any(entity in e for e in context.nearby_entities) for entity in trigger.near_entities
        ):
            matches += 1

    if trigger.time_of_day:
        checks += 1
        if context.time == trigger.time_of_day:
            matches += 1

    if trigger.underground is not None:
        checks += 1
        if context.underground == trigger.underground:
            matches += 1

    if trigger.health_range:
        checks += 1
        low, high = trigger.health_range
        if low <= context.health <= high:
            matches += 1

    if trigger.food_range:
        checks += 1
        low, high = trigger.food_range
        if low <= context.food <= high:
            matches += 1

    return matches / checks if checks > 0 else 0.0


class PatternDistiller:
    """Maintains the live set of distilled patterns.

    Provides:
    - Periodic distillation of session records into patterns
    - Decay of every live pattern, pruning to a capped set
    - Context-relevant recall for the decision-maker
    - Persistence to a single JSON file
    """

    def __init__(
        self,
        config: Optional[DistillerConfig] = None,
        patterns_file: Optional[Path] = None,
    ):
        """Initialize the distiller.

        Args:
            config: Distillation thresholds
            patterns_file: JSON file patterns are loaded from and saved to
        """
        self.config = config or DistillerConfig.from_env()
        self.patterns_file = patterns_file or Path("data") / "learning" / "patterns.json"
        self._patterns: dict[str, Pattern] = {}
        self._lock = threading.RLock()
        self._last_distillation: Optional[int] = None

        self.patterns_file.parent.mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        """Load persisted patterns and refresh their decay."""
        self.load_patterns()
        self.apply_temporal_decay()
        logger.info(f"Pattern distiller ready ({len(self)} patterns loaded)")

    def distill(self, entries: Sequence[SessionRecord], now_ms: Optional[int] = None) -> int:
        """Run one distillation cycle.

        Every live pattern is decayed and the set pruned even when
        ``entries`` is empty, so idle patterns keep fading.

        Args:
            entries: Recently loaded session records
            now_ms: Reference time for decay (defaults to now)

        Returns:
            Number of patterns created or updated
        """
        now = now_ms if now_ms is not None else _now_ms()

        groups: dict[str, list[SessionRecord]] = {}
        for entry in entries:
            groups.setdefault(entry.signature, []).append(entry)

        created = 0
        updated = 0
        dropped = 0
        with self._lock:
            for signature, group in groups.items():
                if len(group) < self.config.min_attempts:
                    continue

                pattern = self._build_pattern(signature, group, now)
                if pattern is None:
                    if self._patterns.pop(signature, None) is not None:
                        dropped += 1
                    continue

                if signature in self._patterns:
                    updated += 1
                else:
                    created += 1
                self._patterns[signature] = pattern

            self.apply_temporal_decay(now)
            self._prune()
            self._last_distillation = now

        self.save_patterns()
        logger.info(
            f"Distilled {len(entries)} records: {created} new, {updated} updated, "
            f"{dropped} dropped, {len(self)} total"
        )
        return created + updated

    def _build_pattern(
        self, signature: str, entries: list[SessionRecord], now: int
    ) -> Optional[Pattern]:
        attempts = len(entries)
        successes = [e for e in entries if e.success]
        confidence = wilson_lower_bound(len(successes), attempts)
        if confidence < self.config.min_confidence:
            return None

        last_seen = max(e.timestamp_ms for e in entries)
        return Pattern(
            id=signature,
            trigger=extract_trigger(entries),
            action=entries[0].action,
            stats=PatternStats(
                attempts=attempts,
                successes=len(successes),
                avg_duration_ms=round(sum(e.result.ms for e in entries) / attempts),
                first_seen=min(e.timestamp_ms for e in entries),
                last_seen=last_seen,
                last_success=max(e.timestamp_ms for e in successes) if successes else None,
            ),
            confidence=confidence,
            decayed_score=decayed_score(confidence, now - last_seen, self.config.half_life_ms),
            reliability=classify_reliability(confidence, attempts),
        )

    def apply_temporal_decay(self, now_ms: Optional[int] = None) -> None:
        """Recompute the decayed score of every live pattern."""
        now = now_ms if now_ms is not None else _now_ms()
        with self._lock:
            for pattern in self._patterns.values():
                pattern.decayed_score = decayed_score(
                    pattern.confidence,
                    now - pattern.stats.last_seen,
                    self.config.half_life_ms,
                )

    def _prune(self) -> None:
        if len(self._patterns) <= self.config.max_patterns:
            return
        ranked = sorted(
            self._patterns.items(), key=lambda item: item[1].decayed_score, reverse=True
        )
        removed = len(ranked) - self.config.max_patterns
        self._patterns = dict(ranked[: self.config.max_patterns])
        logger.info(f"Pruned {removed} patterns, {len(self._patterns)} remaining")

    def get_relevant_patterns(self, context: CompactContext, limit: int = 10) -> list[Pattern]:
        """Patterns whose trigger matches the context, best first.

        Ranked by match score times decayed score. Patterns matching no
        condition are excluded.
        """
        with self._lock:
            scored = []
            for pattern in self._patterns.values():
                match = trigger_match_score(pattern.trigger, context)
                if match > 0:
                    scored.append((match * pattern.decayed_score, pattern))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [pattern for _, pattern in scored[:limit]]

    def get_top_patterns(self, limit: int = 20) -> list[Pattern]:
        with self._lock:
            ranked = sorted(self._patterns.values(), key=lambda p: p.decayed_score, reverse=True)
        return ranked[:limit]

    def get_high_confidence_patterns(self, min_confidence: float = 0.6) -> list[Pattern]:
        with self._lock:
            matching = [p for p in self._patterns.values() if p.confidence >= min_confidence]
        return sorted(matching, key=lambda p: p.confidence, reverse=True)

    def get_pattern(self, pattern_id: str) -> Optional[Pattern]:
        with self._lock:
            return self._patterns.get(pattern_id)

    def build_context_for_ai(self, context: CompactContext) -> str:
        relevant = self.get_relevant_patterns(context, 5)
        if not relevant:
            return ""

        now = _now_ms()
        marks = {"high": "✓", "medium": "○"}
        lines = ["LEARNED PATTERNS (from past sessions):"]
        for pattern in relevant:
            success_pct = round(pattern.stats.success_rate * 100)
            age_h = round((now - pattern.stats.last_seen) / (60 * 60 * 1000))
            age = f"{age_h}h ago" if age_h < 24 else f"{round(age_h / 24)}d ago"
            lines.append(
                f"  {marks.get(pattern.reliability, '?')} "
                f'"{pattern.action.type} {pattern.action.target}": '
                f"{success_pct}% success ({pattern.stats.attempts} tries, {age})"
            )
        return "\n".join(lines)

    def load_patterns(self) -> int:
        """Load patterns from disk, accepting the legacy bare-list format.

        Returns:
            Number of patterns loaded
        """
        if not self.patterns_file.exists():
            logger.debug("No patterns file found, starting fresh")
            return 0

        try:
            with open(self.patterns_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load patterns: {e}")
            return 0

        if isinstance(data, list):
            raw_patterns = data
        elif isinstance(data, dict):
            if data.get("version") != PATTERN_FILE_VERSION:
                logger.warning(
                    f"Pattern file version {data.get('version')!r} differs from "
                    f"{PATTERN_FILE_VERSION}, loading what validates"
                )
            raw_patterns = data.get("patterns") or []
        else:
            logger.warning("Unrecognized pattern file layout, starting fresh")
            return 0

        loaded: dict[str, Pattern] = {}
        for raw in raw_patterns:
            if not isinstance(raw, dict):
                continue
            raw = _backfill_pattern_id(raw)
            try:
                pattern = Pattern.model_validate(raw)
            except ValidationError:
                logger.warning(f"Discarding malformed pattern {raw.get('id')!r}")
                continue
            loaded[pattern.id] = pattern

        with self._lock:
            self._patterns = loaded
        logger.info(f"Loaded {len(loaded)} patterns")
        return len(loaded)

    def save_patterns(self) -> bool:
        with self._lock:
            payload = {
                "version": PATTERN_FILE_VERSION,
                "lastUpdated": datetime.now(timezone.utc).isoformat(),
                "config": asdict(self.config),
                "patterns": [
                    p.model_dump(mode="json", by_alias=True, exclude_none=True)
                    for p in self._patterns.values()
                ],
            }
        try:
            write_json_atomic(self.patterns_file, payload)
        except OSError as e:
            logger.error(f"Failed to save patterns: {e}")
            return False
        logger.debug(f"Saved {len(payload['patterns'])} patterns")
        return True

    def get_stats(self) -> dict:
        with self._lock:
            counts = Counter(p.reliability for p in self._patterns.values())
            return {
                "total_patterns": len(self._patterns),
                "high_confidence": counts["high"],
                "medium_confidence": counts["medium"],
                "low_confidence": counts["low"],
                "uncertain": counts["uncertain"],
                "last_distillation": self._last_distillation,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._patterns)

    def clear(self) -> None:
        """Remove all patterns and persist the empty set."""
        with self._lock:
            self._patterns.clear()
        self.save_patterns()
        logger.info("Patterns cleared")


def _backfill_pattern_id(raw: dict[str, Any]) -> dict[str, Any]:
    if raw.get("id"):
        return raw
    action = raw.get("action")
    if not isinstance(action, dict) or not action.get("type"):
        return raw
    return {**raw, "id": f"{action['type']}:{action.get('target') or ''}"}
