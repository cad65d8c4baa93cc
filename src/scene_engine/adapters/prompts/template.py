"""Default template-based prompt provider."""

from typing import Any

from scene_engine.adapters.prompts.base import PromptProvider
from scene_engine.domain.enums import SceneType


class TemplatePromptProvider(PromptProvider):
    """Composes prompts from fixed templates and the job's shared context."""

    def scenario_prompt(self, input_text: str) -> str:
        return (
            "Write a short narrated video scenario as JSON with keys "
            "title, context, opening and slides.\n\n"
            f"Topic:\n{input_text.strip()}"
        )

    def media_prompt(
        self,
        scene_prompt: str,
        scene_type: SceneType,
        context: dict[str, Any] | None,
        feedback: str | None = None,
    ) -> str:
        parts = [scene_prompt.strip()]
        style = _describe(context)
        if style:
            parts.append(style)
        if scene_type == SceneType.OPENING:
            parts.append("cinematic opening shot")
        if feedback:
            parts.append(f"Revision notes: {feedback.strip()}")
        return ", ".join(parts)

    def safe_prompt(self, scene_type: SceneType, context: dict[str, Any] | None) -> str:
        base = "calm abstract background with soft light"
        if scene_type == SceneType.OPENING:
            base = "slow pan over a calm abstract landscape"
        style = (context or {}).get("style")
        return f"{base}, {style}" if style else base


def _describe(context: dict[str, Any] | None) -> str:
    if not context:
        return ""
    fields = ("character", "style")
    return ", ".join(str(context[f]) for f in fields if context.get(f))
