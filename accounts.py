import logging

from fastapi import APIRouter, Depends
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import get_db, serialize, utcnow
from errors import ConflictError, NotFoundError, UnauthorizedError
from schemas import LoginRequest, ProfileUpdate, SignupRequest, User
from security import create_access_token, get_current_user, hash_password, verify_password

logger = logging.getLogger("parking.accounts")

router = APIRouter(prefix="/api/auth", tags=["auth"])

PUBLIC_FIELDS = ("_id", "name", "email", "phone", "role", "vehicle", "currentLocation")


def public_profile(user: dict) -> dict:
    return {k: user.get(k) for k in PUBLIC_FIELDS}


def signup(db: Database, req: SignupRequest) -> dict:
    if db["user"].find_one({"email": req.email}):
        raise ConflictError("User already exists with this email")
    user = User(
        name=req.name.strip(),
        email=req.email,
        password=hash_password(req.password),
        phone=req.phone.strip(),
        currentLocation=req.currentLocation,
        vehicle=req.vehicle or {},
    ).model_dump()
    user["createdAt"] = utcnow()
    try:
        db["user"].insert_one(user)
    except DuplicateKeyError:
        raise ConflictError("User already exists with this email")
    logger.info("registered user %s", user["_id"])
    return user


def login(db: Database, req: LoginRequest) -> dict:
    user = db["user"].find_one({"email": req.email})
    if not user or not verify_password(req.password, user.get("password")):
        raise UnauthorizedError("Invalid email or password")
    return user


def get_profile(db: Database, user: dict) -> dict:
    profile = db["user"].find_one({"_id": user["_id"]}, {"password": 0})
    if not profile:
        raise NotFoundError("User not found")
    booking_ids = profile.get("bookings") or []
    by_id = {b["_id"]: b for b in db["booking"].find({"_id": {"$in": booking_ids}})} if booking_ids else {}
    profile["bookings"] = [by_id[b] for b in booking_ids if b in by_id]
    return profile


def update_profile(db: Database, user: dict, req: ProfileUpdate) -> dict:
    changes = req.model_dump(exclude_unset=True, exclude_none=True)
    if changes:
        db["user"].update_one({"_id": user["_id"]}, {"$set": changes})
    updated = db["user"].find_one({"_id": user["_id"]})
    if not updated:
        raise NotFoundError("User not found")
    return updated


@router.post("/signup", status_code=201)
def signup_route(req: SignupRequest, db: Database = Depends(get_db)):
    user = signup(db, req)
    data = public_profile(user)
    data["token"] = create_access_token(str(user["_id"]))
    return {"success": True, "data": serialize(data)}


@router.post("/login")
def login_route(req: LoginRequest, db: Database = Depends(get_db)):
    user = login(db, req)
    data = public_profile(user)
    data["token"] = create_access_token(str(user["_id"]))
    return {"success": True, "data": serialize(data)}


@router.get("/profile")
def profile_route(db: Database = Depends(get_db), user: dict = Depends(get_current_user)):
    return {"success": True, "data": serialize(get_profile(db, user))}


@router.put("/profile")
def update_profile_route(req: ProfileUpdate, db: Database = Depends(get_db), user: dict = Depends(get_current_user)):
    return {"success": True, "data": serialize(public_profile(update_profile(db, user, req)))}


@router.post("/logout")
def logout_route(user: dict = Depends(get_current_user)):
    # tokens are stateless; the client discards its copy
    return {"success": True, "message": "User logged out successfully"}
