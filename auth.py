import hashlib
import logging
import re
import secrets
import uuid
from datetime import timedelta
from typing import Callable, List, Optional

from bson import ObjectId
from email_validator import EmailNotValidError, validate_email
from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr
from pymongo.errors import DuplicateKeyError

import config
from database import as_utc, get_collection, parse_object_id, serialize_doc, utcnow
from errors import AuthenticationRequired, Conflict, Forbidden, NotFound, ValidationFailed
from notifications import queue_notification
from schemas import AddressRequest, PasswordChangeRequest, ProfileUpdateRequest, RegisterRequest, User

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6
PHONE_PATTERN = re.compile(r"^\+?[\d\s\-()]{10,}$")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class CurrentUser(BaseModel):
    id: str
    name: str
    email: EmailStr
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def password_errors(password: str) -> List[str]:
    errors = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    return errors


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = utcnow() + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def public_user(user: dict) -> dict:
    """User document as returned to clients, without credentials."""
    data = serialize_doc(user)
    data.pop("password_hash", None)
    data.pop("password", None)
    data.pop("wishlist", None)
    data.pop("reset_token_hash", None)
    data.pop("reset_token_expires", None)
    return data


def _user_from_token(token: str) -> CurrentUser:
    credentials_exception = AuthenticationRequired("Could not validate credentials")
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None or not ObjectId.is_valid(user_id):
            raise credentials_exception
    except JWTError:
        raise credentials_exception
    user = get_collection("user").find_one({"_id": ObjectId(user_id)})
    if not user or not user.get("is_active", True):
        raise credentials_exception
    return CurrentUser(id=str(user["_id"]), name=user.get("name"), email=user.get("email"), role=user.get("role", "user"))


def get_current_user(token: str = Depends(oauth2_scheme)) -> CurrentUser:
    return _user_from_token(token)


def get_optional_user(token: Optional[str] = Depends(optional_oauth2_scheme)) -> Optional[CurrentUser]:
    if not token:
        return None
    return _user_from_token(token)


def require_role(role: str) -> Callable[..., CurrentUser]:
    """Dependency factory guarding privileged handlers."""

    def dependency(current: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current.role != role:
            raise Forbidden(f"{role.capitalize()} access required")
        return current

    return dependency


require_admin = require_role("admin")


# Accounts

def register_user(payload: RegisterRequest) -> dict:
    if not payload.email or not payload.name or not payload.password:
        raise ValidationFailed("Email, name, and password are required")
    try:
        email = validate_email(payload.email.strip(), check_deliverability=False).normalized.lower()
    except EmailNotValidError:
        raise ValidationFailed("Please enter a valid email address")
    problems = password_errors(payload.password)
    if problems:
        raise ValidationFailed("Password does not meet requirements", details=problems)

    users = get_collection("user")
    if users.find_one({"email": email}):
        raise Conflict("User with this email already exists")

    now = utcnow()
    doc = {
        "name": payload.name.strip(),
        "email": email,
        "phone": payload.phone,
        "password_hash": get_password_hash(payload.password),
        "role": "user",
        "addresses": [],
        "wishlist": [],
        "is_active": True,
        "last_login": None,
        "created_at": now,
        "updated_at": now,
    }
    User.model_validate(doc)
    try:
        doc["_id"] = users.insert_one(doc).inserted_id
    except DuplicateKeyError:
        raise Conflict("User with this email already exists")
    logger.info("Registered user %s", doc["_id"])
    return public_user(doc)


def authenticate(email: str, password: str) -> dict:
    user = get_collection("user").find_one({"email": (email or "").strip().lower()})
    if not user or not verify_password(password or "", user.get("password_hash", "")):
        raise AuthenticationRequired("Invalid email or password")
    if not user.get("is_active", True):
        raise Forbidden("Account is deactivated")
    now = utcnow()
    get_collection("user").update_one({"_id": user["_id"]}, {"$set": {"last_login": now}})
    user["last_login"] = now
    return user


def issue_token(user: dict) -> Token:
    return Token(access_token=create_access_token({"sub": str(user["_id"]), "role": user.get("role", "user")}))


def _user_doc(current: CurrentUser) -> dict:
    user = get_collection("user").find_one({"_id": parse_object_id(current.id, "user")})
    if not user:
        raise NotFound("User not found")
    return user


def get_profile(current: CurrentUser) -> dict:
    return public_user(_user_doc(current))


def update_profile(current: CurrentUser, payload: ProfileUpdateRequest) -> dict:
    changes = {}
    if payload.name is not None:
        name = payload.name.strip()
        if len(name) < 2:
            raise ValidationFailed("Name must be at least 2 characters long")
        changes["name"] = name
    if payload.phone is not None:
        phone = payload.phone.strip()
        if not PHONE_PATTERN.match(phone):
            raise ValidationFailed("Please enter a valid phone number")
        changes["phone"] = phone

    user = _user_doc(current)
    if changes:
        changes["updated_at"] = utcnow()
        get_collection("user").update_one({"_id": user["_id"]}, {"$set": changes})
        user.update(changes)
    return public_user(user)


def _set_password(user: dict, password: str) -> None:
    problems = password_errors(password)
    if problems:
        raise ValidationFailed("Password does not meet requirements", details=problems)
    get_collection("user").update_one(
        {"_id": user["_id"]},
        {
            "$set": {"password_hash": get_password_hash(password), "updated_at": utcnow()},
            "$unset": {"reset_token_hash": "", "reset_token_expires": ""},
        },
    )


def change_password(current: CurrentUser, payload: PasswordChangeRequest) -> None:
    if not payload.current_password or not payload.new_password:
        raise ValidationFailed("Current password and new password are required")
    user = _user_doc(current)
    if not verify_password(payload.current_password, user.get("password_hash", "")):
        raise ValidationFailed("Current password is incorrect")
    _set_password(user, payload.new_password)
    logger.info("User %s changed their password", user["_id"])


# Password reset

def _hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def request_password_reset(email: Optional[str]) -> None:
    """Queue a reset link when the account exists; callers answer the same either way."""
    try:
        email = validate_email((email or "").strip(), check_deliverability=False).normalized.lower()
    except EmailNotValidError:
        raise ValidationFailed("Invalid email address")
    user = get_collection("user").find_one({"email": email})
    if not user or not user.get("is_active", True):
        logger.info("Password reset requested for unknown account")
        return

    token = secrets.token_urlsafe(32)
    get_collection("user").update_one(
        {"_id": user["_id"]},
        {"$set": {
            "reset_token_hash": _hash_reset_token(token),
            "reset_token_expires": utcnow() + timedelta(minutes=config.PASSWORD_RESET_EXPIRE_MINUTES),
        }},
    )
    queue_notification("password_reset", user["email"], {
        "name": user.get("name"),
        "reset_url": f"{config.APP_URL}/auth/reset-password?token={token}",
        "expires_in_minutes": config.PASSWORD_RESET_EXPIRE_MINUTES,
    })
    logger.info("Password reset requested for user %s", user["_id"])


def reset_password(token: Optional[str], password: Optional[str]) -> None:
    if not token or not password:
        raise ValidationFailed("Reset token and new password are required")
    user = get_collection("user").find_one({"reset_token_hash": _hash_reset_token(token)})
    expires = as_utc(user.get("reset_token_expires")) if user else None
    if expires is None or expires <= utcnow():
        raise ValidationFailed("Invalid or expired reset token")
    _set_password(user, password)
    logger.info("Password reset completed for user %s", user["_id"])


# Addresses

def list_addresses(current: CurrentUser) -> List[dict]:
    return _user_doc(current).get("addresses", [])


def add_address(current: CurrentUser, payload: AddressRequest) -> List[dict]:
    user = _user_doc(current)
    addresses = user.get("addresses", [])
    address = payload.model_dump()
    address["id"] = uuid.uuid4().hex
    if not addresses:
        address["is_default"] = True
    if address["is_default"]:
        for a in addresses:
            a["is_default"] = False
    addresses.append(address)
    get_collection("user").update_one({"_id": user["_id"]}, {"$set": {"addresses": addresses, "updated_at": utcnow()}})
    return addresses


def delete_address(current: CurrentUser, address_id: str) -> List[dict]:
    user = _user_doc(current)
    addresses = user.get("addresses", [])
    remaining = [a for a in addresses if a.get("id") != address_id]
    if len(remaining) == len(addresses):
        raise NotFound("Address not found")
    if remaining and not any(a.get("is_default") for a in remaining):
        remaining[0]["is_default"] = True
    get_collection("user").update_one({"_id": user["_id"]}, {"$set": {"addresses": remaining, "updated_at": utcnow()}})
    return remaining


def set_default_address(current: CurrentUser, address_id: str) -> List[dict]:
    user = _user_doc(current)
    addresses = user.get("addresses", [])
    if not any(a.get("id") == address_id for a in addresses):
        raise NotFound("Address not found")
    for a in addresses:
        a["is_default"] = a.get("id") == address_id
    get_collection("user").update_one({"_id": user["_id"]}, {"$set": {"addresses": addresses, "updated_at": utcnow()}})
    return addresses
