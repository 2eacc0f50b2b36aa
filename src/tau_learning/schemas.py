from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

TimeOfDay = Literal["day", "night", "dawn", "dusk"]
Reliability = Literal["high", "medium", "low", "uncertain"]

MAX_INVENTORY_ITEMS = 10
MAX_NEARBY_BLOCKS = 5
MAX_NEARBY_ENTITIES = 5


class CompactContext(BaseModel):
    """World state snapshot taken when a decision was made."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    position: tuple[int, int, int] = Field((0, 64, 0), alias="pos")
    health: float = Field(20, alias="hp")
    food: float = Field(20, alias="fd")
    inventory: tuple[str, ...] = Field((), alias="inv")
    nearby_blocks: tuple[str, ...] = Field((), alias="blk")
    nearby_entities: tuple[str, ...] = Field((), alias="ent")
    time: TimeOfDay = "day"
    underground: bool = False

    @field_validator("inventory")
    @classmethod
    def _cap_inventory(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return value[:MAX_INVENTORY_ITEMS]

    @field_validator("nearby_blocks")
    @classmethod
    def _cap_blocks(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return value[:MAX_NEARBY_BLOCKS]

    @field_validator("nearby_entities")
    @classmethod
    def _cap_entities(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return value[:MAX_NEARBY_ENTITIES]


class ActionRef(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: str
    target: str = ""

    @field_validator("target", mode="before")
    @classmethod
    def _none_target(cls, value):
        return "" if value is None else value

    @property
    def signature(self) -> str:
        return f"{self.type}:{self.target}"


class OutcomeRecord(BaseModel):
    """One recorded action attempt, as held by the short-term buffer."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    timestamp_ms: int = Field(..., alias="ts")
    action: ActionRef
    context: CompactContext = Field(..., alias="ctx")
    success: bool
    duration_ms: int = Field(0, alias="durationMs")
    reason: Optional[str] = None
    error_msg: Optional[str] = Field(None, alias="errorMsg")

    @property
    def signature(self) -> str:
        return self.action.signature

    @property
    def message(self) -> str:
        if self.error_msg:
            return self.error_msg
        return "Success" if self.success else "Failed"


class SessionResult(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    ok: bool
    msg: str = ""
    ms: int = 0


class SessionRecord(BaseModel):
    """Compact line stored in a session log file."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    timestamp_ms: int = Field(..., alias="ts")
    context: CompactContext = Field(..., alias="ctx")
    action: ActionRef = Field(..., alias="act")
    result: SessionResult = Field(..., alias="res")
    reason: Optional[str] = None

    @classmethod
    def from_outcome(cls, record: OutcomeRecord) -> "SessionRecord":
        return cls(
            timestamp_ms=record.timestamp_ms,
            context=record.context,
            action=record.action,
            result=SessionResult(
                ok=record.success,
                msg=record.message,
                ms=record.duration_ms,
            ),
            reason=record.reason,
        )

    @property
    def signature(self) -> str:
        return self.action.signature

    @property
    def success(self) -> bool:
        return self.result.ok


class PatternTrigger(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    has_items: Optional[list[str]] = Field(None, alias="hasItems")
    near_blocks: Optional[list[str]] = Field(None, alias="nearBlocks")
    near_entities: Optional[list[str]] = Field(None, alias="nearEntities")
    health_range: Optional[tuple[float, float]] = Field(None, alias="healthRange")
    food_range: Optional[tuple[float, float]] = Field(None, alias="foodRange")
    time_of_day: Optional[TimeOfDay] = Field(None, alias="timeOfDay")
    underground: Optional[bool] = None


class PatternStats(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    attempts: int
    successes: int
    avg_duration_ms: int = Field(0, alias="avgDurationMs")
    first_seen: int = Field(..., alias="firstSeen")
    last_seen: int = Field(..., alias="lastSeen")
    last_success: Optional[int] = Field(None, alias="lastSuccess")

    @property
    def success_rate(self) -> float:
        return self.successes / self.attempts if self.attempts > 0 else 0.0


class Pattern(BaseModel):
    """Behavioral rule distilled from outcomes sharing an action signature."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    trigger: PatternTrigger = Field(default_factory=PatternTrigger)
    action: ActionRef
    stats: PatternStats
    confidence: float = Field(..., ge=0.0, le=1.0)
    decayed_score: float = Field(0.0, alias="decayedScore")
    reliability: Reliability = "uncertain"


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Literal["system", "user", "assistant"]
    content: str


class TrainingRecord(BaseModel):
    """Three-message instruction-tuning record."""

    model_config = ConfigDict(extra="ignore")

    messages: list[ChatMessage]
    success: bool
    reward: float = 0.0
