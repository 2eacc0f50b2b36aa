"""Shared fixtures for learning memory tests."""
from __future__ import annotations

import time
from pathlib import Path

import pytest

from tau_learning.memory import (
    BufferConfig,
    DistillerConfig,
    LearningConfig,
    SessionLogConfig,
)
from tau_learning.schemas import (
    ActionRef,
    CompactContext,
    OutcomeRecord,
    SessionRecord,
)

DAY_MS = 24 * 60 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


def make_context(**overrides) -> CompactContext:
    """Build a context with sensible surface defaults."""
    fields = dict(
        position=(10, 70, -5),
        health=20,
        food=18,
        inventory=("wooden_pickaxe", "oak_log"),
        nearby_blocks=("oak_log", "grass_block"),
        nearby_entities=("cow",),
        time="day",
        underground=False,
    )
    fields.update(overrides)
    return CompactContext(**fields)


def make_outcome(
    action_type: str = "mine",
    target: str = "oak_log",
    success: bool = True,
    ts: int | None = None,
    context: CompactContext | None = None,
    duration_ms: int = 500,
    reason: str | None = None,
    error_msg: str | None = None,
) -> OutcomeRecord:
    return OutcomeRecord(
        timestamp_ms=ts if ts is not None else now_ms(),
        action=ActionRef(type=action_type, target=target),
        context=context or make_context(),
        success=success,
        duration_ms=duration_ms,
        reason=reason,
        error_msg=error_msg,
    )


def make_session_record(**kwargs) -> SessionRecord:
    return SessionRecord.from_outcome(make_outcome(**kwargs))


def make_group(
    count: int,
    successes: int,
    action_type: str = "mine",
    target: str = "oak_log",
    ts: int | None = None,
    context: CompactContext | None = None,
) -> list[SessionRecord]:
    """Records for one action signature, the first ``successes`` succeeding."""
    base = ts if ts is not None else now_ms()
    return [
        make_session_record(
            action_type=action_type,
            target=target,
            success=i < successes,
            ts=base - (count - i),
            context=context,
        )
        for i in range(count)
    ]


@pytest.fixture
def data_dir(tmp_path) -> Path:
    """Root learning data directory."""
    return tmp_path / "learning"


@pytest.fixture
def buffer_config(data_dir) -> BufferConfig:
    return BufferConfig(capacity=5, flush_interval_s=3600, data_dir=data_dir / "hot")


@pytest.fixture
def session_config(data_dir) -> SessionLogConfig:
    return SessionLogConfig(
        max_records_per_file=1000, retention_days=7, data_dir=data_dir / "sessions"
    )


@pytest.fixture
def distiller_config() -> DistillerConfig:
    return DistillerConfig(min_attempts=5, min_confidence=0.3, decay_half_life_days=7)


@pytest.fixture
def learning_config(data_dir) -> LearningConfig:
    """Coordinator config with timers too slow to fire during a test."""
    return LearningConfig(
        data_dir=data_dir,
        distill_interval_s=3600,
        buffer=BufferConfig(capacity=5, flush_interval_s=3600),
        session_log=SessionLogConfig(max_records_per_file=1000, retention_days=7),
        distiller=DistillerConfig(),
    )
