"""Message template management system."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, List, Optional, Any, Final, Mapping

from loguru import logger


class TemplateError(Exception):
    """Base exception for template operations."""
    pass


class TemplateNotFoundError(TemplateError):
    """Raised when a template id is unknown."""
    pass


class TemplateRenderError(TemplateError):
    """Raised when template rendering fails."""
    pass


DAILY_VOCAB_WORD: Final[str] = "daily_vocab_word"
DAILY_VOCAB_COMPACT: Final[str] = "daily_vocab_compact"
DEFAULT_TEMPLATE_ID: Final[str] = DAILY_VOCAB_WORD

BUILTIN_TEMPLATES: Final[Dict[str, str]] = {
    DAILY_VOCAB_WORD: (
        "📚 *{{category_title}} WORD OF THE DAY*\n"
        "\n"
        "*Word:* {{word}} ({{part_of_speech}})\n"
        "*Pronunciation:* {{pronunciation}}\n"
        "*Meaning:* {{definition}}\n"
        "*Example:* {{example}}\n"
        "*Memory Hook:* {{memory_hook}}\n"
        "\n"
        "Word {{position}} of {{total_words}} for today"
    ),
    DAILY_VOCAB_COMPACT: (
        "*{{word}}*: {{definition}}\n"
        "e.g. {{example}}\n"
        "({{position}}/{{total_words}})"
    ),
}

REQUIRED_VARIABLES: Final[Dict[str, tuple[str, ...]]] = {
    DAILY_VOCAB_WORD: ("word", "definition", "example", "category", "position", "total_words"),
    DAILY_VOCAB_COMPACT: ("word", "definition", "example", "position", "total_words"),
}

OPTIONAL_DEFAULTS: Final[Dict[str, str]] = {
    "part_of_speech": "word",
    "pronunciation": "-",
    "memory_hook": "Remember this word!",
}


class SimpleTemplateEngine:
    """Simple template engine for ``{{variable}}`` substitution.

    An unresolved placeholder is an error.
    """

    VARIABLE_PATTERN: re.Pattern[str] = re.compile(r'\{\{([^}]+)\}\}')

    def render(self, template: str, context: Mapping[str, Any]) -> str:
        """Render template with context data.

        Args:
            template: Template string with {{variable}} placeholders.
            context: Mapping of variable names to values.

        Returns:
            Rendered template string.

        Raises:
            TemplateRenderError: If a placeholder has no value.
        """
        missing: List[str] = []

        def replace_variable(match: re.Match[str]) -> str:
            name: str = match.group(1).strip()
            value: Any = context.get(name)
            if value is None or value == "":
                missing.append(name)
                return ""
            return str(value)

        rendered: str = self.VARIABLE_PATTERN.sub(replace_variable, template)
        if missing:
            raise TemplateRenderError(f"Missing template variables: {', '.join(sorted(set(missing)))}")
        return rendered


class MessageTemplateManager:
    """Renders outbox messages from a template id and variables."""

    def __init__(self, templates_dir: Optional[Path] = None) -> None:
        """Initialize template manager.

        Args:
            templates_dir: Directory with ``<template_id>.txt`` overrides. If
                None, only built-in templates are available.
        """
        self.templates_dir: Optional[Path] = templates_dir
        self.engine: SimpleTemplateEngine = SimpleTemplateEngine()

        if templates_dir:
            logger.info(f"Message template manager initialized with custom templates: {templates_dir}")
        else:
            logger.debug("Message template manager initialized with built-in templates")

    def available_templates(self) -> List[str]:
        names: set[str] = set(BUILTIN_TEMPLATES)
        if self.templates_dir and self.templates_dir.is_dir():
            names.update(path.stem for path in self.templates_dir.glob("*.txt"))
        return sorted(names)

    def render(self, template_id: str, variables: Mapping[str, Any]) -> str:
        """Render a message body.

        Args:
            template_id: Template to use.
            variables: Values for the template placeholders.

        Returns:
            Rendered message text.

        Raises:
            TemplateNotFoundError: If the template id is unknown.
            TemplateRenderError: If a required variable is missing.
        """
        template_content: str = self._load_template(template_id)

        missing: List[str] = [
            name for name in REQUIRED_VARIABLES.get(template_id, ())
            if variables.get(name) in (None, "")
        ]
        if missing:
            raise TemplateRenderError(
                f"Template '{template_id}' missing required variables: {', '.join(missing)}"
            )

        context: Dict[str, Any] = dict(OPTIONAL_DEFAULTS)
        context.update({key: value for key, value in variables.items() if value not in (None, "")})
        if "category" in context:
            context["category_title"] = str(context["category"]).replace("-", " ").upper()

        rendered: str = self.engine.render(template_content, context)
        logger.debug(f"Rendered template {template_id} ({len(rendered)} chars)")
        return rendered

    def _load_template(self, template_id: str) -> str:
        """Load template content from the overrides directory or built-ins.

        Raises:
            TemplateNotFoundError: If template cannot be found.
        """
        if self.templates_dir:
            template_file: Path = self.templates_dir / f"{template_id}.txt"
            if template_file.exists():
                try:
                    return template_file.read_text(encoding='utf-8')
                except OSError as e:
                    logger.warning(f"Failed to read custom template {template_file}: {e}")

        if template_id not in BUILTIN_TEMPLATES:
            raise TemplateNotFoundError(f"Template '{template_id}' not found")

        return BUILTIN_TEMPLATES[template_id]
