"""
Message template registry.

Templates are the only messages WhatsApp delivers outside the 24-hour
window. A branch sees its own templates plus the global ones (branch_id
NULL); only active, approved templates are offered or sendable.
"""

import logging
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from school_chat.errors import NotFoundError, ValidationError
from school_chat.models import MessageTemplate, TemplateStatus
from school_chat.storage import transaction
from school_chat.utils import utc_now_iso

logger = logging.getLogger(__name__)


def create_template(
    db: Session,
    name: str,
    body: str,
    branch_id: Optional[str] = None,
    description: Optional[str] = None,
    variables: Optional[List[str]] = None,
    category: str = "UTILITY",
    language: str = "en",
    provider_template_name: Optional[str] = None,
    status=TemplateStatus.PENDING,
) -> MessageTemplate:
    """
    Register a template.

    Raises:
        ValidationError: blank name/body, or the name is taken in this branch and language
    """
    if not name or not name.strip():
        raise ValidationError("Template name is required")
    if not body or not body.strip():
        raise ValidationError("Template body is required")

    now = utc_now_iso()
    template = MessageTemplate(
        branch_id=branch_id,
        name=name.strip(),
        description=description,
        body=body,
        variables=list(variables or []),
        category=category,
        language=language,
        provider_template_name=provider_template_name,
        status=TemplateStatus(status).value,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    try:
        with transaction(db):
            db.add(template)
    except IntegrityError:
        raise ValidationError(f"Template '{name}' already exists for language {language}")

    logger.info(f"Created template {template.id} ({template.name}) for branch {branch_id or 'all'}")
    return template


def get_template(db: Session, template_id: str) -> MessageTemplate:
    template = db.get(MessageTemplate, template_id)
    if template is None:
        raise NotFoundError(f"Template {template_id} not found")
    return template


def list_templates(db: Session, branch_id: str) -> List[MessageTemplate]:
    """Active, approved templates usable by a branch, by category then name."""
    return (
        db.query(MessageTemplate)
        .filter(
            or_(MessageTemplate.branch_id == branch_id, MessageTemplate.branch_id.is_(None)),
            MessageTemplate.is_active.is_(True),
            MessageTemplate.status == TemplateStatus.APPROVED.value,
        )
        .order_by(MessageTemplate.category, MessageTemplate.name)
        .all()
    )


def check_sendable(template: MessageTemplate, branch_id: str) -> None:
    """Raise ValidationError unless the template can be sent from this branch."""
    if template.branch_id is not None and template.branch_id != branch_id:
        raise ValidationError(f"Template {template.name} belongs to another branch")
    if not template.is_active or template.status != TemplateStatus.APPROVED.value:
        raise ValidationError(f"Template {template.name} is not approved for sending")
    if not template.provider_template_name:
        raise ValidationError(f"Template {template.name} is not registered with the provider")


def template_parameters(template: MessageTemplate, values: Optional[dict] = None) -> List[str]:
    """
    Order the caller's variable values the way the template declares them.

    Raises:
        ValidationError: a declared variable has no value
    """
    values = values or {}
    missing = [name for name in template.variables or [] if not str(values.get(name) or "").strip()]
    if missing:
        raise ValidationError(f"Missing template variables: {', '.join(missing)}")
    return [str(values[name]) for name in template.variables or []]
