from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import pydantic
from pydantic.alias_generators import to_camel

QUESTION_TOOL_NAME = "AskUserQuestion"

ModelT = TypeVar("ModelT", bound=pydantic.BaseModel)


@dataclass(slots=True, frozen=True)
class ParseResult(Generic[ModelT]):
    """Outcome of validating a tool input against its schema."""

    success: bool
    data: ModelT | Any = None
    error: str | None = None


class _ToolInput(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class QuestionOption(_ToolInput):
    label: str = pydantic.Field(min_length=1)
    description: str | None = None


class Question(_ToolInput):
    question: str
    header: str | None = None
    multi_select: bool = False
    options: list[QuestionOption] = pydantic.Field(min_length=1)


class AskUserQuestionInput(_ToolInput):
    questions: list[Question] = pydantic.Field(min_length=1)


class ToolSchemaRegistry:
    """Maps tool names to the pydantic model that validates their input.

    Tools without a registered schema are treated as opaque and always parse.
    """

    def __init__(self) -> None:
        self._schemas: dict[str, type[pydantic.BaseModel]] = {}

    def register(self, name: str, schema: type[pydantic.BaseModel]) -> None:
        self._schemas[name] = schema

    def has(self, name: str) -> bool:
        return name in self._schemas

    def parse(self, name: str, tool_input: Any) -> ParseResult[Any]:
        schema = self._schemas.get(name)
        if schema is None:
            return ParseResult(success=True, data=tool_input)
        try:
            return ParseResult(success=True, data=schema.model_validate(tool_input))
        except pydantic.ValidationError as exc:
            return ParseResult(success=False, error=str(exc))


def default_registry() -> ToolSchemaRegistry:
    registry = ToolSchemaRegistry()
    registry.register(QUESTION_TOOL_NAME, AskUserQuestionInput)
    return registry
