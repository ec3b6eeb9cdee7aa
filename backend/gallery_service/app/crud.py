from sqlalchemy.orm import Session
from typing import List
from backend.gallery_service.app import models


def get_images(db: Session) -> List[models.Image]:
    return db.query(models.Image).order_by(models.Image.id.desc()).all()
