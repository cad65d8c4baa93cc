"""Base interface for prompt providers."""

from abc import ABC, abstractmethod
from typing import Any

from scene_engine.domain.enums import SceneType


class PromptProvider(ABC):
    """Supplies fully composed prompt text for each generation call."""

    @abstractmethod
    def scenario_prompt(self, input_text: str) -> str:
        """Prompt that turns the user's input into a scenario."""
        ...

    @abstractmethod
    def media_prompt(
        self,
        scene_prompt: str,
        scene_type: SceneType,
        context: dict[str, Any] | None,
        feedback: str | None = None,
    ) -> str:
        """Prompt for a scene's image or opening clip."""
        ...

    @abstractmethod
    def safe_prompt(self, scene_type: SceneType, context: dict[str, Any] | None) -> str:
        """Neutral prompt used after the provider refuses the original one."""
        ...

    def narration_text(self, narration: str | None, title: str | None) -> str:
        """Text spoken for a scene."""
        return (narration or title or "").strip()
