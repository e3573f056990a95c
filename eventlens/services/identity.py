# ruff: noqa: I001
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy.orm import Session
from starlette.requests import Request

from eventlens.core.settings import settings
from eventlens.models.user import User
from db import get_db

serializer = URLSafeTimedSerializer(settings.SECRET_KEY, salt="identity")


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: Optional[str] = None
    is_anonymous: bool = False
    name: Optional[str] = None


def issue_token(user_id: str, email: Optional[str] = None, anonymous: bool = False, name: Optional[str] = None) -> str:
    """Sign an identity payload; used by the identity bridge and by tests."""
    return str(serializer.dumps({"uid": user_id, "email": email, "anonymous": anonymous, "name": name}))


def verify_token(token: str, max_age: Optional[int] = None) -> Optional[Identity]:
    try:
        data = serializer.loads(
            token, max_age=max_age or settings.IDENTITY_TOKEN_MAX_AGE_SECONDS
        )
    except (BadSignature, SignatureExpired):
        return None
    if not isinstance(data, dict) or not data.get("uid"):
        return None
    return Identity(
        user_id=str(data["uid"]),
        email=data.get("email"),
        is_anonymous=bool(data.get("anonymous")),
        name=data.get("name"),
    )


def _bearer(request: Request) -> Optional[str]:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def remember_user(db: Session, identity: Identity) -> User:
    """Upsert the local user row for a verified identity."""
    user = db.query(User).filter(User.UserID == identity.user_id).first()
    if user is None:
        user = User(
            UserID=identity.user_id,
            Email=identity.email,
            FullName=identity.name,
            IsAnonymous=identity.is_anonymous,
        )
        db.add(user)
        db.commit()
    elif (identity.email and user.Email != identity.email) or (identity.name and user.FullName != identity.name):
        user.Email = identity.email or user.Email
        user.FullName = identity.name or user.FullName
        db.commit()
    return user


def optional_identity(request: Request, db: Session = Depends(get_db)) -> Optional[Identity]:
    token = _bearer(request)
    if not token:
        return None
    identity = verify_token(token)
    if identity is not None:
        remember_user(db, identity)
        request.state.user_id = identity.user_id
    return identity


def require_identity(identity: Optional[Identity] = Depends(optional_identity)) -> Identity:
    if identity is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return identity


def require_admin(
    identity: Identity = Depends(require_identity), db: Session = Depends(get_db)
) -> Identity:
    """Dependency that requires an admin user based on the IsAdmin flag."""
    user = db.query(User).filter(User.UserID == identity.user_id).first()
    if not user or not bool(user.IsAdmin):
        raise HTTPException(status_code=403, detail="Forbidden")
    return identity
