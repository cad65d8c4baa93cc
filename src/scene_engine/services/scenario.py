"""Scenario document parsing.

A scenario is the structured output of the scenario generation call: a
title, a shared job-level context and an ordered list of scenes (one
opening clip followed by narrated slides).
"""

import json
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from scene_engine.domain.enums import SceneType
from scene_engine.domain.models import SceneSpec
from scene_engine.errors import ValidationError


class ScenarioScene(BaseModel):
    """One scene as described by the scenario."""

    title: str | None = None
    prompt: str = Field(min_length=1)
    narration: str | None = None
    duration_seconds: float = Field(default=10.0, gt=0)


class ScenarioDocument(BaseModel):
    """Parsed scenario."""

    title: str = Field(min_length=1)
    context: dict[str, Any] = Field(default_factory=dict)
    opening: ScenarioScene | None = None
    slides: list[ScenarioScene] = Field(min_length=1)

    def scene_specs(self) -> list[SceneSpec]:
        """Flatten into ordered scene specs; the opening (if any) is order 0."""
        specs: list[SceneSpec] = []
        if self.opening is not None:
            specs.append(_spec(0, SceneType.OPENING, self.opening))
        offset = len(specs)
        specs.extend(
            _spec(offset + i, SceneType.SLIDE, slide) for i, slide in enumerate(self.slides)
        )
        return specs


def _spec(order: int, scene_type: SceneType, scene: ScenarioScene) -> SceneSpec:
    return SceneSpec(
        order=order,
        scene_type=scene_type,
        prompt=scene.prompt,
        narration=scene.narration,
        title=scene.title,
        duration_seconds=scene.duration_seconds,
    )


def parse_scenario(raw: str | dict[str, Any]) -> ScenarioDocument:
    """Parse scenario JSON produced by the generation provider.

    Raises:
        ValidationError: If the text is not valid JSON or misses required fields.
    """
    try:
        data = json.loads(raw) if isinstance(raw, str) else raw
    except json.JSONDecodeError as e:
        raise ValidationError(f"Scenario is not valid JSON: {e}") from e

    try:
        return ScenarioDocument.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Scenario is missing required fields: {e}") from e
