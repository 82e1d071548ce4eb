from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..db import get_db
from ..models import Personalization, User, UserSettings
from ..schemas import SeedResponse
from ..settings import settings
from .users import user_to_out

router = APIRouter()


@router.post("/dev/seed", response_model=SeedResponse)
def seed(db: Session = Depends(get_db)):
    """Create the default local user if missing (idempotent)."""
    user = db.query(User).filter(User.username == settings.default_username).first()
    created = False
    if not user:
        user = User(
            username=settings.default_username,
            settings=UserSettings(),
            personalization=Personalization(),
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        created = True
    return SeedResponse(user=user_to_out(user), created=created)
