"""
JustTry CRM - Routes Users (admin)
List / create / update / delete users. Requires users.manage.
"""

from fastapi import APIRouter, HTTPException, Depends

from models import User, UserCreate, UserUpdate, UserRole
from config import db, hash_password, now_iso, generate_user_id
from services.event_logger import log_event
from services.permissions import require_permission

router = APIRouter(prefix="/users", tags=["Users"])


@router.get("")
async def list_users(user: User = Depends(require_permission("users.manage"))):
    users = await db.users.find({}, {"_id": 0, "password": 0}).to_list(500)
    return {"users": users}


@router.post("")
async def create_user(data: UserCreate, user: User = Depends(require_permission("users.manage"))):
    existing = await db.users.find_one({"email": data.email})
    if existing:
        raise HTTPException(status_code=400, detail="Email already exists")

    new_user = {
        "id": generate_user_id(),
        "name": data.name.strip(),
        "email": data.email,
        "password": hash_password(data.password),
        "role": data.role.value,
        "avatar": data.avatar,
        # service types only filter back-office visibility
        "service_types": [s.value for s in data.service_types] if data.role == UserRole.BACK_OFFICE else [],
        "is_active": True,
        "created_at": now_iso(),
        "created_by": user.id
    }

    await db.users.insert_one(new_user)

    await log_event(
        "user_create", "user", new_user["id"],
        user=user.email,
        details={"email": new_user["email"], "role": new_user["role"]}
    )

    new_user.pop("password", None)
    new_user.pop("_id", None)
    return {"success": True, "user": new_user}


@router.patch("/{user_id}")
async def update_user(user_id: str, data: UserUpdate, user: User = Depends(require_permission("users.manage"))):
    target = await db.users.find_one({"id": user_id})
    if not target:
        raise HTTPException(status_code=404, detail="User not found")

    update_data = {}

    if data.name is not None:
        update_data["name"] = data.name.strip()
    if data.role is not None:
        update_data["role"] = data.role.value
    if data.avatar is not None:
        update_data["avatar"] = data.avatar
    if data.service_types is not None:
        update_data["service_types"] = [s.value for s in data.service_types]
    if data.is_active is not None:
        if user_id == user.id and not data.is_active:
            raise HTTPException(status_code=400, detail="You cannot deactivate your own account")
        update_data["is_active"] = data.is_active
    if data.password is not None:
        update_data["password"] = hash_password(data.password)

    update_data["updated_at"] = now_iso()

    await db.users.update_one({"id": user_id}, {"$set": update_data})

    await log_event(
        "user_update", "user", user_id,
        user=user.email,
        details={k: v for k, v in update_data.items() if k not in ("updated_at", "password")}
    )

    updated = await db.users.find_one({"id": user_id}, {"_id": 0, "password": 0})
    return {"success": True, "user": updated}


@router.delete("/{user_id}")
async def delete_user(user_id: str, user: User = Depends(require_permission("users.manage"))):
    if user_id == user.id:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")

    target = await db.users.find_one({"id": user_id})
    if not target:
        raise HTTPException(status_code=404, detail="User not found")

    await db.users.delete_one({"id": user_id})
    await db.sessions.delete_many({"user_id": user_id})

    await log_event("user_delete", "user", user_id, user=user.email, details={"email": target.get("email")})

    return {"success": True}
