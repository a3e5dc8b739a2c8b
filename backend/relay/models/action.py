from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from relay.errors import ActionDecodeError


class Do(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["Do"] = "Do"
    data: str


class Say(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["Say"] = "Say"
    data: str


GeneratedAction = Annotated[Union[Do, Say], Field(discriminator="type")]

VARIANTS = ("Do", "Say")

# handed to the backend as a generation constraint; kept flat so strict
# json_schema mode and llama.cpp grammar conversion both accept it
ACTION_GRAMMAR: dict = {
    "type": "object",
    "properties": {
        "type": {"type": "string", "enum": list(VARIANTS)},
        "data": {"type": "string"},
    },
    "required": ["type", "data"],
    "additionalProperties": False,
}

_adapter: TypeAdapter[GeneratedAction] = TypeAdapter(GeneratedAction)


def parse_action(raw: str) -> Do | Say:
    """validate a complete JSON document as exactly one Do or Say"""
    try:
        return _adapter.validate_json(raw.strip())
    except ValidationError as e:
        raise ActionDecodeError(raw, f"invalid action ({e.error_count()} errors)") from e


def dump_action(action: Do | Say) -> str:
    return action.model_dump_json()
