from fastapi import APIRouter, Depends, HTTPException
import logging
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from mhealth_core.auth import check_password, get_db, hash_password, issue_token
from mhealth_core.models import User

router = APIRouter(prefix="/users", tags=["users"])
log = logging.getLogger("mhealth_api")


class Credentials(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1)


@router.post("")
@router.post("/", include_in_schema=False)
def register(creds: Credentials, db: Session = Depends(get_db)):
    if db.query(User).filter(User.username == creds.username).first():
        raise HTTPException(status_code=409, detail="Username already taken")
    user = User(username=creds.username, password_hash=hash_password(creds.password))
    db.add(user)
    db.commit()
    db.refresh(user)
    log.info("users.register id=%s", user.id)
    return {"id": user.id, "username": user.username}


@router.post("/login")
def login(creds: Credentials, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.username == creds.username).first()
    if not check_password(user, creds.password):
        log.warning("users.login rejected username=%s", creds.username)
        raise HTTPException(status_code=401, detail="Invalid username or password")
    return {"access_token": issue_token(user.username), "token_type": "bearer"}
