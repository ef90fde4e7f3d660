from __future__ import annotations

"""Prompt template loading and rendering helpers.

Prompt files are stored under ``backend/prompts`` and referenced by stable keys.
Each improvement mode has a system prompt and a user template with a
``{content}`` placeholder.
"""

from functools import lru_cache
from pathlib import Path

from .models import ImprovementMode

PROMPT_FILES: dict[str, str] = {
    "generate_system": "generate_system.txt",
    **{
        f"improve_{mode.value}_{part}": f"improve_{mode.value}_{part}.txt"
        for mode in ImprovementMode
        for part in ("system", "user")
    },
}


def _prompt_dir() -> Path:
    """Return the on-disk prompt template directory."""

    return Path(__file__).resolve().parents[1] / "prompts"


@lru_cache(maxsize=None)
def load_prompt(name: str) -> str:
    """Load a named prompt template from disk (cached per process)."""

    try:
        file_name = PROMPT_FILES[name]
    except KeyError as exc:
        raise ValueError(f"Unknown prompt name: {name}") from exc

    path = _prompt_dir() / file_name
    if not path.exists():
        raise FileNotFoundError(f"Prompt file not found: {path}")
    return path.read_text(encoding="utf-8").strip()


def render_prompt(name: str, **kwargs) -> str:
    """Render a prompt template using ``str.format`` variables."""

    template = load_prompt(name)
    try:
        return template.format(**kwargs)
    except KeyError as exc:
        missing = exc.args[0]
        raise ValueError(f"Missing prompt variable '{missing}' for {name}") from exc


def improvement_prompts(mode: ImprovementMode | str, content: str) -> tuple[str, str]:
    """Return ``(system, user)`` prompts for an improvement mode."""

    mode = ImprovementMode(mode)
    system = load_prompt(f"improve_{mode.value}_system")
    user = render_prompt(f"improve_{mode.value}_user", content=content)
    return system, user
