"""System prompt assembly."""

from __future__ import annotations

from pathlib import Path

SYSTEM_TEMPLATE_PATH = Path(__file__).parent.parent / "prompts" / "system.txt"

WEB_SEARCH_CITATION_REMINDER = (
    "IMPORTANT: When you receive search results, they will be numbered [1], [2], etc. "
    "You must use the format [citation:1], [citation:2] in your response to cite the sources."
)


def load_system_template(path: Path = SYSTEM_TEMPLATE_PATH) -> str:
    return path.read_text(encoding="utf-8")


def build_system_prompt(template: str, web_search: bool = False, summary: str | None = None) -> str:
    """
    Fill the {summary_block} placeholder and add the citation reminder.

    With no summary the placeholder disappears entirely: no empty header.
    """
    summary_block = ""
    if summary:
        summary_block = (
            f"\nPrevious conversation summary:\n{summary}\n\n"
            "Use this summary as context for the current conversation.\n"
        )
    prompt = template.replace("{summary_block}", summary_block).rstrip()
    if web_search:
        prompt = f"{prompt}\n\n{WEB_SEARCH_CITATION_REMINDER}"
    return prompt
