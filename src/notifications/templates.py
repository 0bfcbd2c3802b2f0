"""Notification templates and rendering.

Templates carry ``{{variable}}`` placeholders in their title and body.
Whitespace inside the braces is tolerated and unknown variables render as
the empty string.
"""

from datetime import datetime, timezone
from typing import Callable, Optional
import logging
import re

from src.notifications.config import NotificationCategory, NotificationPriority
from src.notifications.errors import NotFoundError, TemplateLockedError, ValidationError
from src.notifications.models import NotificationTemplate
from src.notifications.store import NotificationStore, InMemoryStore, TEMPLATES

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def render_text(text: str, variables: dict) -> str:
    """Substitute {{key}} placeholders in text."""
    def _replace(match: re.Match) -> str:
        value = variables.get(match.group(1))
        return "" if value is None else str(value)

    return PLACEHOLDER_PATTERN.sub(_replace, text or "")


def extract_variables(text: str) -> list[str]:
    """Placeholder names in order of first appearance."""
    seen: list[str] = []
    for name in PLACEHOLDER_PATTERN.findall(text or ""):
        if name not in seen:
            seen.append(name)
    return seen


def render(template: NotificationTemplate, variables: Optional[dict] = None) -> dict:
    """Render a template's title and body. Variables override default_data."""
    merged = {**template.default_data, **(variables or {})}
    return {
        "title": render_text(template.title_template, merged),
        "body": render_text(template.body_template, merged),
    }


BUILTIN_TEMPLATES: list[dict] = [
    {
        "template_id": "trade_executed",
        "name": "Trade Executed",
        "title_template": "{{side}} {{symbol}} filled",
        "body_template": "{{bot_name}} {{side}} {{quantity}} {{symbol}} @ ${{price}}",
        "category": NotificationCategory.TRADE,
        "priority": NotificationPriority.HIGH,
        "default_data": {"bot_name": "Your bot"},
    },
    {
        "template_id": "price_target",
        "name": "Price Target Reached",
        "title_template": "{{symbol}} hit ${{price}}",
        "body_template": "{{symbol}} reached your target of ${{target_price}} ({{direction}})",
        "category": NotificationCategory.PRICE,
        "priority": NotificationPriority.HIGH,
        "default_data": {},
    },
    {
        "template_id": "bot_update",
        "name": "Bot Update",
        "title_template": "{{bot_name}} {{status}}",
        "body_template": "{{bot_name}} is now {{status}}. {{message}}",
        "category": NotificationCategory.BOT,
        "priority": NotificationPriority.MEDIUM,
        "default_data": {},
    },
    {
        "template_id": "big_move",
        "name": "Big Market Move",
        "title_template": "{{symbol}} moved {{change_percent}}%",
        "body_template": "{{symbol}} is {{direction}} {{change_percent}}% to ${{price}}",
        "category": NotificationCategory.BIG_MOVES,
        "priority": NotificationPriority.HIGH,
        "default_data": {},
    },
    {
        "template_id": "security_alert",
        "name": "Security Alert",
        "title_template": "Security alert: {{event}}",
        "body_template": "{{event}} detected from {{location}}. If this wasn't you, secure your account.",
        "category": NotificationCategory.SECURITY,
        "priority": NotificationPriority.CRITICAL,
        "default_data": {"location": "an unknown location"},
    },
    {
        "template_id": "system_announcement",
        "name": "System Announcement",
        "title_template": "{{title}}",
        "body_template": "{{message}}",
        "category": NotificationCategory.SYSTEM,
        "priority": NotificationPriority.MEDIUM,
        "default_data": {},
    },
    {
        "template_id": "daily_summary",
        "name": "Daily Summary",
        "title_template": "Daily summary for {{date}}",
        "body_template": "P&L {{pnl}} across {{trade_count}} trades. Win rate {{win_rate}}%.",
        "category": NotificationCategory.TRADE,
        "priority": NotificationPriority.LOW,
        "default_data": {},
    },
]


class TemplateRegistry:
    """Stores builtin and custom templates.

    Builtin templates can never be edited or deleted. Custom templates can be
    edited until a delivered notification references them.
    """

    def __init__(
        self,
        store: Optional[NotificationStore] = None,
        is_referenced: Optional[Callable[[str], bool]] = None,
    ):
        self.store = store or InMemoryStore()
        self._is_referenced = is_referenced or (lambda template_id: False)
        self._install_builtins()

    def _install_builtins(self) -> None:
        for builtin in BUILTIN_TEMPLATES:
            if self.store.get(TEMPLATES, builtin["template_id"]) is not None:
                continue
            template = NotificationTemplate(
                is_builtin=True,
                variables=extract_variables(builtin["title_template"] + " " + builtin["body_template"]),
                **builtin,
            )
            self.store.put(TEMPLATES, template.template_id, template.to_dict())

    def set_reference_check(self, is_referenced: Callable[[str], bool]) -> None:
        self._is_referenced = is_referenced

    def get(self, template_id: str) -> Optional[NotificationTemplate]:
        doc = self.store.get(TEMPLATES, template_id)
        return NotificationTemplate.from_dict(doc) if doc else None

    def require(self, template_id: str) -> NotificationTemplate:
        template = self.get(template_id)
        if template is None:
            raise NotFoundError("template", template_id)
        return template

    def list_templates(self, category: Optional[NotificationCategory] = None) -> list[NotificationTemplate]:
        templates = [NotificationTemplate.from_dict(d) for d in self.store.query(TEMPLATES)]
        if category is not None:
            templates = [t for t in templates if t.category == category]
        return sorted(templates, key=lambda t: (not t.is_builtin, t.name))

    def create(
        self,
        name: str,
        title_template: str,
        body_template: str,
        category: NotificationCategory,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        default_data: Optional[dict] = None,
        icon: Optional[str] = None,
    ) -> NotificationTemplate:
        """Create a custom template."""
        for field_name, value in (("name", name), ("title_template", title_template), ("body_template", body_template)):
            if not value:
                raise ValidationError(f"{field_name} is required", field=field_name)
        category = _coerce(NotificationCategory, category, "category")
        priority = _coerce(NotificationPriority, priority, "priority")

        template = NotificationTemplate(
            name=name,
            title_template=title_template,
            body_template=body_template,
            category=category,
            priority=priority,
            variables=extract_variables(title_template + " " + body_template),
            default_data=dict(default_data or {}),
            icon=icon,
        )
        self.store.put(TEMPLATES, template.template_id, template.to_dict())
        logger.info("Created template %s (%s)", template.template_id, name)
        return template

    def update(self, template_id: str, **changes) -> NotificationTemplate:
        """Update a custom template that no notification references yet."""
        template = self.require(template_id)
        if template.is_builtin:
            raise TemplateLockedError(template_id, "builtin templates are read-only")
        if self._is_referenced(template_id):
            raise TemplateLockedError(template_id, "referenced by delivered notifications")

        allowed = {"name", "title_template", "body_template", "category", "priority", "default_data", "icon"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Unknown template fields: {', '.join(sorted(unknown))}", field="template")

        for key, value in changes.items():
            if key == "category":
                value = _coerce(NotificationCategory, value, "category")
            elif key == "priority":
                value = _coerce(NotificationPriority, value, "priority")
            elif key in ("name", "title_template", "body_template") and not value:
                raise ValidationError(f"{key} cannot be empty", field=key)
            setattr(template, key, value)

        template.variables = extract_variables(template.title_template + " " + template.body_template)
        template.updated_at = datetime.now(timezone.utc)
        self.store.put(TEMPLATES, template.template_id, template.to_dict())
        return template

    def delete(self, template_id: str) -> bool:
        template = self.get(template_id)
        if template is None:
            return False
        if template.is_builtin:
            raise TemplateLockedError(template_id, "builtin templates cannot be deleted")
        return self.store.delete(TEMPLATES, template_id)

    def render_template(self, template_id: str, variables: Optional[dict] = None) -> dict:
        """Render a stored template. Includes its category and priority."""
        template = self.require(template_id)
        rendered = render(template, variables)
        rendered["category"] = template.category
        rendered["priority"] = template.priority
        return rendered


def _coerce(enum_cls, value, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {value}", field=field_name)
