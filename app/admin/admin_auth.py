"""
Admin authentication and authorization utilities.
"""

import hmac
from typing import Optional, List
from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.core.config import settings
from app.utils.validation import is_valid_evm_address

import structlog

logger = structlog.get_logger(__name__)

security = HTTPBearer()


class AdminAuth:
    """Admin authentication for operator endpoints."""

    def __init__(self, api_key: Optional[str] = None, wallets: Optional[str] = None):
        # Admin wallet addresses, stored lowercase
        self.admin_wallets: List[str] = self._load_admin_wallets(
            settings.admin_wallets if wallets is None else wallets
        )
        self.admin_api_key: Optional[str] = api_key or settings.admin_api_key

    def _load_admin_wallets(self, admin_wallets_str: str) -> List[str]:
        """Load admin wallet addresses from configuration."""
        if not admin_wallets_str:
            logger.warning("No admin wallets configured")
            return []

        wallets = []
        for wallet in admin_wallets_str.split(','):
            wallet = wallet.strip()
            if is_valid_evm_address(wallet):
                wallets.append(wallet.lower())
            else:
                logger.warning("Invalid admin wallet address", wallet=wallet)

        logger.info("Loaded admin wallets", count=len(wallets))
        return wallets

    def is_admin_wallet(self, wallet: str) -> bool:
        return wallet.lower() in self.admin_wallets

    def is_valid_api_key(self, api_key: str) -> bool:
        if not self.admin_api_key:
            return False
        return hmac.compare_digest(api_key.encode(), self.admin_api_key.encode())

    def authenticate_request(self, credentials: HTTPAuthorizationCredentials) -> dict:
        """
        Authenticate an admin request using Bearer token.

        Token can be either:
        1. Admin wallet address
        2. Admin API key
        """
        token = credentials.credentials.strip()

        if self.is_valid_api_key(token):
            return {
                "auth_type": "api_key",
                "authenticated": True,
                "admin": True
            }

        if is_valid_evm_address(token) and self.is_admin_wallet(token):
            return {
                "auth_type": "wallet",
                "wallet": token.lower(),
                "authenticated": True,
                "admin": True
            }

        return {
            "authenticated": False,
            "admin": False
        }


# Global admin auth instance
admin_auth = AdminAuth()


async def require_admin_auth(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> dict:
    """
    Dependency that requires admin authentication.

    Raises HTTPException if authentication fails.
    Returns authentication info if successful.
    """
    auth_result = admin_auth.authenticate_request(credentials)

    if not auth_result.get("authenticated") or not auth_result.get("admin"):
        logger.warning(
            "Admin authentication failed",
            token_preview=credentials.credentials[:8] + "..." if len(credentials.credentials) > 8 else credentials.credentials
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin authentication required",
            headers={"WWW-Authenticate": "Bearer"}
        )

    logger.debug(
        "Admin authenticated successfully",
        auth_type=auth_result["auth_type"],
        wallet=auth_result.get("wallet", "N/A")
    )

    return auth_result


def get_admin_identity(auth_result: dict) -> str:
    """Identity recorded in audit fields such as the plan approver."""
    return auth_result.get("wallet") or auth_result.get("auth_type", "unknown")
