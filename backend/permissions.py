from fastapi import HTTPException, status, Depends
from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId
from auth import get_current_user
import logging

logger = logging.getLogger(__name__)


class PermissionChecker:
    """
    Permission enforcement for the back-office API.

    RULES:
    1. User must be authenticated
    2. User must have active_status = TRUE
    3. Role-based permissions apply (Admin, AccountManager, HOF)
    4. Approval-level gating is decided by the workflow, not here
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_authenticated_user(self, current_user: dict = Depends(get_current_user)):
        """Get and validate authenticated user"""
        user_id = current_user.get("user_id")

        if not ObjectId.is_valid(user_id):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid authentication credentials"
            )

        # Fetch user from database
        user = await self.db.users.find_one({"_id": ObjectId(user_id)})

        if not user:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="User not found"
            )

        # Check active status
        if not user.get("active_status", False):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="User account is inactive"
            )

        # Convert _id to user_id for consistency
        user["user_id"] = str(user.pop("_id"))

        return user

    async def check_roles(self, user: dict, *roles: str):
        """Check that the user holds one of the given roles"""
        if user.get("role") not in roles:
            logger.warning(f"[PERMISSION] {user.get('user_id')} ({user.get('role')}) denied; requires {roles}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{user.get('role')}' is not allowed; requires one of {', '.join(roles)}"
            )
        return True

    async def check_admin_role(self, user: dict):
        """Check if user has Admin role"""
        return await self.check_roles(user, "Admin")
