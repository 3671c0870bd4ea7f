"""Prompt construction for agent iterations.

The agent starts every iteration with no memory. Everything it knows about
earlier work comes from the context rendered here: the story itself, a
bounded summary of recent progress, and the gate diagnostics from the last
attempt at the same story.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from jinja2 import Template, TemplateError

from .errors import ConfigError
from .ledger import Story
from .progress import IterationOutcome

logger = logging.getLogger(__name__)

PROMPT_FILENAME = "prompt.md"

DEFAULT_TEMPLATE = """\
You are working on one user story in the repository at {{ workspace }}.

## Story {{ story.id }}: {{ story.title }}

{{ story.description }}

### Acceptance criteria
{% for criterion in story.acceptance_criteria -%}
- {{ criterion }}
{% else -%}
- (none given)
{% endfor %}
{%- if story.notes %}
### Notes
{{ story.notes }}
{% endif %}
## Recent progress
{{ progress }}
{% if diagnostics %}
## Quality gate failures from the previous attempt at this story
{{ diagnostics }}
{% endif %}
## Instructions
1. Implement only this story.
2. Keep changes focused and incremental.
3. Run the project's checks before finishing: {{ gate_names }}.
4. Do not edit the ledger file ({{ ledger_name }}); the loop updates it.
"""


class PromptBuilder:
    """Renders the per-iteration prompt."""

    def __init__(self, template: Optional[str] = None, max_diagnostic_chars: int = 3000):
        """Initialize the builder.

        Args:
            template: Jinja2 template text. Defaults to DEFAULT_TEMPLATE.
            max_diagnostic_chars: Cap on the gate-diagnostics block.
        """
        try:
            self.template = Template(template or DEFAULT_TEMPLATE)
        except TemplateError as exc:
            raise ConfigError(f"Invalid prompt template: {exc}") from exc
        self.max_diagnostic_chars = max_diagnostic_chars

    @classmethod
    def from_project(cls, project_dir: Path) -> PromptBuilder:
        """Use ``prompt.md`` from the project directory when present."""
        custom = Path(project_dir) / PROMPT_FILENAME
        if custom.exists():
            logger.info(f"Using custom prompt template: {custom}")
            return cls(custom.read_text(encoding="utf-8"))
        return cls()

    def build(
        self,
        story: Story,
        workspace: Path,
        progress_summary: str,
        previous: Optional[IterationOutcome] = None,
        gate_names: Optional[list[str]] = None,
        ledger_name: str = "prd.json",
    ) -> str:
        """Render the prompt for one iteration."""
        diagnostics = ""
        if previous is not None:
            failing = [g for g in previous.gate_results if not g.passed]
            diagnostics = "\n\n".join(
                f"### {g.name} [{g.status.value}]\n{g.diagnostics}".rstrip() for g in failing
            )
            if len(diagnostics) > self.max_diagnostic_chars:
                diagnostics = "... (truncated)\n" + diagnostics[-self.max_diagnostic_chars:]

        try:
            return self.template.render(
                story=story,
                workspace=str(workspace),
                progress=progress_summary,
                diagnostics=diagnostics,
                gate_names=", ".join(gate_names) if gate_names else "none configured",
                ledger_name=ledger_name,
            )
        except TemplateError as exc:
            raise ConfigError(f"Failed to render prompt template: {exc}") from exc
