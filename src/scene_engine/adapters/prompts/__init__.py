"""Prompt composition adapters."""

from scene_engine.adapters.prompts.base import PromptProvider
from scene_engine.adapters.prompts.template import TemplatePromptProvider

__all__ = ["PromptProvider", "TemplatePromptProvider"]
