"""Prompt rendering for agent turns."""

from taskloop.rendering.prompts import PromptRenderer

__all__ = ["PromptRenderer"]
