"""Conversion of session records into instruction-tuning records."""
from __future__ import annotations

from ..persistence import compact_json
from ..schemas import ChatMessage, CompactContext, SessionRecord, TrainingRecord

DEFAULT_SYSTEM_PROMPT = (
    "You are a Minecraft survival AI. Given the game state, decide what action to take. "
    'Respond with JSON: {"type": "action_type", "target": "target", '
    '"reasoning": "brief explanation"}'
)

USER_QUESTION = "What action should you take?"


def render_context(ctx: CompactContext) -> str:
    """Render a context as the fixed-order user prompt."""
    x, y, z = ctx.position
    lines = [
        f"Position: ({x}, {y}, {z})",
        f"Health: {_fmt_number(ctx.health)}/20",
        f"Food: {_fmt_number(ctx.food)}/20",
        f"Inventory: {', '.join(ctx.inventory) if ctx.inventory else 'empty'}",
        f"Nearby blocks: {', '.join(ctx.nearby_blocks) if ctx.nearby_blocks else 'none'}",
        f"Nearby entities: {', '.join(ctx.nearby_entities) if ctx.nearby_entities else 'none'}",
        f"Time: {ctx.time}",
    ]
    if ctx.underground:
        lines.append("Location: Underground")
    lines.append(USER_QUESTION)
    return "\n".join(lines)


def _fmt_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def to_training_record(
    entry: SessionRecord,
    system_prompt: str = DEFAULT_SYSTEM_PROMPT,
) -> TrainingRecord:
    assistant = compact_json(
        {
            "type": entry.action.type,
            "target": entry.action.target,
            "reasoning": entry.reason or "No reasoning provided",
        }
    )
    return TrainingRecord(
        messages=[
            ChatMessage(role="system", content=system_prompt),
            ChatMessage(role="user", content=render_context(entry.context)),
            ChatMessage(role="assistant", content=assistant),
        ],
        success=entry.success,
        reward=1.0 if entry.success else 0.0,
    )
