"""
Templates routes for CRUD operations on campaign templates.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List, Optional
from pydantic import BaseModel
import logging

from ..database import get_db
from ..models.template import Template
from ..responses import not_found, validation_error

router = APIRouter(prefix="/api/templates", tags=["templates"])
logger = logging.getLogger(__name__)


class TemplateCreate(BaseModel):
    """Schema for creating a template."""
    name: str
    content: str
    category: str = "general"


class TemplateUpdate(BaseModel):
    """Schema for updating a template."""
    name: Optional[str] = None
    content: Optional[str] = None
    category: Optional[str] = None


def template_to_dict(template: Template) -> dict:
    """Convert a Template model to a dictionary response."""
    return {
        "id": template.id,
        "name": template.name,
        "content": template.content,
        "category": template.category,
        "uses": template.use_count or 0,
        "created_at": template.created_at.isoformat(),
        "updated_at": template.updated_at.isoformat() if template.updated_at else None,
    }


def get_template_or_404(db: Session, template_id: int) -> Template:
    template = db.query(Template).filter(Template.id == template_id).first()
    if not template:
        not_found("Template", template_id)
    return template


@router.get("", response_model=List[dict])
def get_templates(
    category: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """Get all templates with optional category filtering."""
    query = db.query(Template)

    if category:
        query = query.filter(Template.category == category)

    templates = query.order_by(Template.created_at.desc(), Template.id.desc()).all()
    return [template_to_dict(t) for t in templates]


@router.get("/{template_id}", response_model=dict)
def get_template(template_id: int, db: Session = Depends(get_db)):
    return template_to_dict(get_template_or_404(db, template_id))


@router.post("", response_model=dict, status_code=201)
def create_template(template_data: TemplateCreate, db: Session = Depends(get_db)):
    """Create a new template."""
    if not template_data.name.strip() or not template_data.content.strip():
        validation_error("Template name and content must not be empty")

    template = Template(
        name=template_data.name.strip(),
        content=template_data.content,
        category=template_data.category,
    )
    db.add(template)
    db.commit()
    db.refresh(template)

    logger.info(f"Created template {template.id}")
    return template_to_dict(template)


@router.patch("/{template_id}", response_model=dict)
def update_template(
    template_id: int,
    template_update: TemplateUpdate,
    db: Session = Depends(get_db),
):
    """Update a template. Campaigns keep the snapshot taken when they selected it."""
    template = get_template_or_404(db, template_id)

    update_data = template_update.model_dump(exclude_unset=True)
    for key, value in update_data.items():
        if value is not None:
            setattr(template, key, value)

    db.commit()
    db.refresh(template)

    return template_to_dict(template)


@router.delete("/{template_id}")
def delete_template(template_id: int, db: Session = Depends(get_db)):
    template = get_template_or_404(db, template_id)

    db.delete(template)
    db.commit()
    return {"message": "Template deleted"}
