"""Building compact contexts from raw game state."""
from __future__ import annotations

import math
from typing import Any, Mapping

from ..schemas import (
    MAX_INVENTORY_ITEMS,
    MAX_NEARBY_BLOCKS,
    MAX_NEARBY_ENTITIES,
    CompactContext,
    TimeOfDay,
)

UNDERGROUND_BELOW_Y = 50
DEFAULT_POSITION = {"x": 0, "y": 64, "z": 0}


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _round_half_up(value: Any) -> int:
    return int(math.floor(float(value) + 0.5))


def _name_of(item: Any) -> str:
    if isinstance(item, (str, int, float)):
        return str(item)
    return str(_get(item, "name") or _get(item, "type") or "unknown")


def _block_names(blocks: Any) -> list[str]:
    if not blocks:
        return []
    if isinstance(blocks, Mapping):
        # Direction mapping such as {"north": "stone", "up": "air"}
        return [str(name) for name in blocks.values() if name and name != "air"]
    if isinstance(blocks, (list, tuple)):
        return [_name_of(b) for b in blocks]
    return []


def _entity_names(entities: Any) -> list[str]:
    if isinstance(entities, (list, tuple)):
        return [_name_of(e) for e in entities]
    return []


def _time_of_day(raw: Any) -> TimeOfDay:
    if not raw:
        return "day"
    text = str(raw).lower()
    if "night" in text:
        return "night"
    if "dawn" in text or "morning" in text:
        return "dawn"
    if "dusk" in text or "evening" in text:
        return "dusk"
    return "day"


def build_compact_context(metadata: Mapping[str, Any]) -> CompactContext:
    """Reduce a game-state snapshot to a :class:`CompactContext`.

    Args:
        metadata: Game state with optional ``position``, ``health``, ``food``,
            ``inventory``, ``nearbyBlocks``/``blocks``,
            ``nearbyEntities``/``entities`` and ``time`` keys

    Returns:
        The compact context
    """
    pos = metadata.get("position") or DEFAULT_POSITION
    x = _get(pos, "x") or 0
    y = _get(pos, "y")
    if y is None:
        y = DEFAULT_POSITION["y"]
    z = _get(pos, "z") or 0

    health = metadata.get("health")
    food = metadata.get("food")

    inventory = []
    for item in (metadata.get("inventory") or [])[:MAX_INVENTORY_ITEMS]:
        name = item if isinstance(item, (str, int, float)) else _get(item, "name")
        if name is not None and name != "":
            inventory.append(str(name))

    blocks = metadata.get("nearbyBlocks") or metadata.get("blocks") or []
    entities = metadata.get("nearbyEntities") or metadata.get("entities") or []

    return CompactContext(
        position=(_round_half_up(x), _round_half_up(y), _round_half_up(z)),
        health=20 if health is None else health,
        food=20 if food is None else food,
        inventory=tuple(inventory),
        nearby_blocks=tuple(_block_names(blocks)[:MAX_NEARBY_BLOCKS]),
        nearby_entities=tuple(_entity_names(entities)[:MAX_NEARBY_ENTITIES]),
        time=_time_of_day(metadata.get("time")),
        underground=y < UNDERGROUND_BELOW_Y,
    )
