"""Prompt catalog for the planner, worker and orchestrator models.

``prompts/prompts.json`` is a tree keyed by agent (``planner.plan``,
``worker.synthesis``, ...). A leaf is a string or a list of lines, rendered
with ``string.Template`` ``$name`` placeholders. The file is re-read when its
mtime changes so prompts can be tuned without restarting a worker.
"""
from __future__ import annotations

import json
from pathlib import Path
from string import Template
from typing import Any, Optional


PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"


class PromptError(LookupError):
    """Unknown prompt key, malformed entry, or missing placeholder value."""


class PromptCatalog:
    def __init__(self, path: Path = PROMPTS_PATH):
        self.path = path
        self._tree: Optional[dict[str, Any]] = None
        self._mtime_ns: Optional[int] = None
        self._templates: dict[str, Template] = {}

    def _load(self) -> dict[str, Any]:
        mtime_ns = self.path.stat().st_mtime_ns
        if self._tree is not None and self._mtime_ns == mtime_ns:
            return self._tree
        tree = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(tree, dict):
            raise PromptError(f"{self.path.name} must hold a JSON object")
        self._tree = tree
        self._mtime_ns = mtime_ns
        self._templates.clear()
        return tree

    def template(self, key: str) -> Template:
        tree = self._load()
        cached = self._templates.get(key)
        if cached is not None:
            return cached

        node: Any = tree
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                raise PromptError(f"Unknown prompt: {key}")
            node = node[part]
        if isinstance(node, list) and all(isinstance(line, str) for line in node):
            node = "\n".join(node)
        if not isinstance(node, str):
            raise PromptError(f"Prompt {key} must be a string or a list of lines")

        template = Template(node)
        if not template.is_valid():
            raise PromptError(f"Prompt {key} has a malformed placeholder")
        self._templates[key] = template
        return template

    def placeholders(self, key: str) -> list[str]:
        return self.template(key).get_identifiers()

    def render(self, key: str, **values: Any) -> str:
        template = self.template(key)
        missing = [name for name in template.get_identifiers() if name not in values]
        if missing:
            raise PromptError(f"Prompt {key} is missing values for: {', '.join(missing)}")
        return template.substitute(**values)

    def reload(self) -> None:
        self._tree = None
        self._mtime_ns = None
        self._templates.clear()


catalog = PromptCatalog()


def render_prompt(key: str, **values: Any) -> str:
    return catalog.render(key, **values)
