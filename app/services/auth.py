from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from firebase_admin import auth as firebase_auth
from firebase_admin.exceptions import FirebaseError
from sqlalchemy.orm import Session

from app.db import get_db
from app.exceptions import UnauthorizedException
from app.models.user import User, UserRole
from app.utils.datetime import utc_now_naive

security = HTTPBearer()


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> User:

    token = credentials.credentials
    # Test tokens for development (ensure persistence so FK constraints pass)
    mock_map = {
        "mock-coach-token": ("coach-1", "Coach", "One", "coach@example.com", UserRole.coach),
        "mock-client-token": ("client-1", "Client", "One", "client@example.com", UserRole.client),
        "mock-admin-token": ("admin-1", "Admin", "One", "admin@example.com", UserRole.admin),
    }
    if token in mock_map:
        uid, first_name, last_name, email, role = mock_map[token]
        user = db.query(User).filter(User.id == uid).first()
        if not user:
            user = User(id=uid, first_name=first_name, last_name=last_name, email=email,
                        role=role, created_at=utc_now_naive())
            db.add(user)
            db.commit()
            db.refresh(user)
        return user

    try:
        decoded_token = firebase_auth.verify_id_token(token)
        user_id = decoded_token["uid"]
        email = decoded_token["email"]
        role_from_token = decoded_token.get("role")
    except (FirebaseError, ValueError, KeyError):
        raise UnauthorizedException("Invalid or expired Firebase token")

    # First try to find user by Firebase UID
    user = db.query(User).filter(User.id == user_id).first()

    # If not found by UID, try to find by email (for existing users)
    if not user:
        user = db.query(User).filter(User.email == email).first()
        if user:
            # Update the user's ID to match Firebase UID
            user.id = user_id
            db.commit()
            return user

    # If still not found, create a new user
    if not user:
        try:
            user_role = UserRole(role_from_token)
        except ValueError:
            user_role = UserRole.client
        user = User(
            id=user_id,
            email=email,
            first_name=decoded_token.get("given_name"),
            last_name=decoded_token.get("family_name"),
            display_name=decoded_token.get("name"),
            role=user_role
        )
        db.add(user)
        db.commit()
        db.refresh(user)

    return user


def require_coach_or_admin(user: User = Depends(get_current_user)) -> User:
    if user.role not in {UserRole.coach, UserRole.admin}:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Coaches or admins only"
        )
    return user
