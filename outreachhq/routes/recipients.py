"""
Recipients routes: the donor records campaigns are generated for.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy import or_
from sqlalchemy.orm import Session
from typing import Optional
import logging

from ..database import get_db
from ..models.recipient import Recipient
from ..responses import not_found, paginated
from ..schemas.recipient import RecipientCreate, RecipientResponse, RecipientUpdate

router = APIRouter(prefix="/api/recipients", tags=["recipients"])
logger = logging.getLogger(__name__)


def get_recipient_or_404(db: Session, recipient_id: int) -> Recipient:
    recipient = db.query(Recipient).filter(Recipient.id == recipient_id).first()
    if not recipient:
        not_found("Recipient", recipient_id)
    return recipient


@router.get("")
def list_recipients(
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    """List recipients by name, optionally filtered by a name or email search."""
    query = db.query(Recipient)

    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            Recipient.first_name.ilike(pattern),
            Recipient.last_name.ilike(pattern),
            Recipient.email.ilike(pattern),
        ))

    total = query.count()
    recipients = (
        query.order_by(Recipient.first_name, Recipient.last_name, Recipient.id)
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    items = [RecipientResponse.model_validate(r).model_dump(mode="json") for r in recipients]
    return paginated(items, total, page, per_page)


@router.get("/{recipient_id}", response_model=RecipientResponse)
def get_recipient(recipient_id: int, db: Session = Depends(get_db)):
    return get_recipient_or_404(db, recipient_id)


@router.post("", response_model=RecipientResponse, status_code=201)
def create_recipient(recipient_data: RecipientCreate, db: Session = Depends(get_db)):
    recipient = Recipient(**recipient_data.model_dump())
    db.add(recipient)
    db.commit()
    db.refresh(recipient)

    logger.info(f"Created recipient {recipient.id}")
    return recipient


@router.patch("/{recipient_id}", response_model=RecipientResponse)
def update_recipient(
    recipient_id: int,
    recipient_update: RecipientUpdate,
    db: Session = Depends(get_db),
):
    """Update a recipient. Running generation keeps the profile it already fetched."""
    recipient = get_recipient_or_404(db, recipient_id)

    update_data = recipient_update.model_dump(exclude_unset=True)
    for key, value in update_data.items():
        if value is not None:
            setattr(recipient, key, value)

    db.commit()
    db.refresh(recipient)

    return recipient
