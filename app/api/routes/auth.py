from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_current_user
from app.db.models import User
from app.db.session import get_db
from app.schemas.auth import LoginRequest
from app.services import auth_service

router = APIRouter()


@router.post("/login")
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    data = auth_service.login(db=db, email=payload.email, password=payload.password)
    return {"data": data.model_dump()}


@router.get("/me")
def me(user: User = Depends(get_current_user)):
    return {"data": auth_service.serialize_user(user)}
