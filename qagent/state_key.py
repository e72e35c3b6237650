import json
from dataclasses import dataclass
from typing import Any, Mapping

# Maps raw observation records to canonical "x:z" state keys

REQUIRED_FIELDS = ("XPos", "ZPos")


class MalformedObservation(ValueError):
    """Raised when an observation record lacks the positional fields."""


@dataclass(frozen=True, slots=True)
class Position:
    """Decoded position of the agent."""
    x: float
    z: float


def _as_mapping(raw: str | Mapping[str, Any]) -> Mapping[str, Any]:
    if isinstance(raw, Mapping):
        return raw
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as exc:
        raise MalformedObservation(f"observation is not valid JSON: {raw!r}") from exc
    if not isinstance(parsed, dict):
        raise MalformedObservation(f"observation is not a JSON object: {raw!r}")
    return parsed


def is_empty_observation(raw: str | Mapping[str, Any] | None) -> bool:
    """
    True for the placeholder an environment publishes before it has data
    (None, blank text, "{}" or an empty mapping).
    """
    if raw is None:
        return True
    if isinstance(raw, Mapping):
        return len(raw) == 0
    text = raw.strip()
    return text == "" or text == "{}"


def decode_observation(raw: str | Mapping[str, Any]) -> Position:
    """
    Decode one observation record into a Position.

    Missing or non-numeric XPos/ZPos raise MalformedObservation; there are
    no default coordinates.
    """
    record = _as_mapping(raw)
    missing = [name for name in REQUIRED_FIELDS if name not in record]
    if missing:
        raise MalformedObservation(f"observation has no {', '.join(missing)}")
    coords = []
    for name in REQUIRED_FIELDS:
        value = record[name]
        # bool is an int subclass but never a coordinate
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise MalformedObservation(f"{name} is not a number: {value!r}")
        coords.append(float(value))
    return Position(x=coords[0], z=coords[1])


def encode_position(position: Position) -> str:
    # truncate toward zero, the same quantization the simulator's integer grid uses
    return f"{int(position.x)}:{int(position.z)}"


def encode(raw: str | Mapping[str, Any]) -> str:
    """
    Map a raw observation record to its state key.
    """
    return encode_position(decode_observation(raw))


def parse_key(key: str) -> tuple[int, int]:
    """Inverse of encode_position, used when drawing the table on a grid."""
    x, z = key.split(":")
    return int(x), int(z)
