from __future__ import annotations

from pathlib import Path

import pytest

from backend.app import prompts as prompts_module
from backend.app.models import ImprovementMode


def test_load_prompt_success_reads_template_file():
    content = prompts_module.load_prompt("generate_system")

    assert "content writing assistant" in content


def test_every_improvement_mode_has_templates():
    for mode in ImprovementMode:
        system = prompts_module.load_prompt(f"improve_{mode.value}_system")
        user = prompts_module.load_prompt(f"improve_{mode.value}_user")

        assert system
        assert "{content}" in user


def test_load_prompt_unknown_name_raises_value_error():
    with pytest.raises(ValueError, match="Unknown prompt name"):
        prompts_module.load_prompt("does_not_exist")


def test_load_prompt_missing_file_raises(monkeypatch):
    monkeypatch.setitem(prompts_module.PROMPT_FILES, "fake_prompt", "missing_prompt.txt")

    with pytest.raises(FileNotFoundError, match="Prompt file not found"):
        prompts_module.load_prompt("fake_prompt")


def test_render_prompt_missing_variable_raises_value_error():
    with pytest.raises(ValueError, match="Missing prompt variable"):
        prompts_module.render_prompt("improve_grammar_user")


def test_improvement_prompts_embed_content_verbatim():
    content = "Text with {braces} and\nnew lines."

    system, user = prompts_module.improvement_prompts("seo", content)

    assert "SEO" in system
    assert user.endswith(content)


def test_improvement_prompts_reject_unknown_mode():
    with pytest.raises(ValueError):
        prompts_module.improvement_prompts("poetry", "text")


def test_prompt_dir_points_to_backend_prompts_folder():
    prompt_dir = prompts_module._prompt_dir()

    assert prompt_dir.name == "prompts"
    assert prompt_dir == Path(__file__).resolve().parents[1] / "backend/prompts"
