from typing import Optional
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from celf.database import AsyncSessionLocal, get_db
from celf.models.user import User, UserRole
from celf.core.redis import get_redis
from celf.core.security import decode_token
from celf.services.wallet_guard import WalletGuard

bearer = HTTPBearer()

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer),
    db: AsyncSession = Depends(get_db),
) -> User:
    user_id = decode_token(credentials.credentials)
    if not user_id:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "User not found")
    return user

async def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != UserRole.admin:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Admin only")
    return user

async def get_wallet_guard() -> WalletGuard:
    return WalletGuard(AsyncSessionLocal, redis=await get_redis())

def get_idempotency_key(
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", max_length=100),
) -> Optional[str]:
    return idempotency_key
