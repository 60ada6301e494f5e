"""
Authentication dependencies and login endpoint
"""

from typing import Optional
from fastapi import APIRouter, Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..system import BankingSystem
from .schemas import LoginRequest, LoginResponse


router = APIRouter()

# Tokens may also arrive in x-jwt-token, so a missing bearer header is not an error here
security = HTTPBearer(auto_error=False)

# Built lazily from configuration on first request
_banking_system: Optional[BankingSystem] = None


def set_banking_system(system: Optional[BankingSystem]) -> None:
    global _banking_system
    _banking_system = system


# Dependency to get banking system
def get_banking_system() -> BankingSystem:
    global _banking_system
    if _banking_system is None:
        _banking_system = BankingSystem.from_config()
    return _banking_system


def get_current_account_number(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_jwt_token: Optional[str] = Header(None),
    system: BankingSystem = Depends(get_banking_system)
) -> int:
    """Dependency that validates the bearer token and returns its account number"""
    token = credentials.credentials if credentials else x_jwt_token
    return system.resolve_token(token)


@router.post("", response_model=LoginResponse)
def login(
    request: LoginRequest,
    system: BankingSystem = Depends(get_banking_system)
):
    """Authenticate with account number and password, returning a bearer token"""
    token = system.authenticate(request.number, request.password)
    return LoginResponse(number=request.number, token=token)
