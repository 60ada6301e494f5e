"""
Account management endpoints
"""

from typing import List
from fastapi import APIRouter, Depends, status

from .auth import get_banking_system, get_current_account_number
from .schemas import AccountResponse, CreateAccountRequest, UpdateAccountRequest
from ..errors import PermissionDeniedError
from ..system import BankingSystem


router = APIRouter()


def _require_owner(system: BankingSystem, account_id: int, account_number: int) -> None:
    if system.get_account(account_id).number != account_number:
        raise PermissionDeniedError("token is not bound to this account")


@router.get("", response_model=List[AccountResponse])
def list_accounts(system: BankingSystem = Depends(get_banking_system)):
    """List all accounts"""
    return [AccountResponse.from_view(view) for view in system.list_accounts()]


@router.post("", status_code=status.HTTP_201_CREATED, response_model=AccountResponse)
def create_account(
    request: CreateAccountRequest,
    system: BankingSystem = Depends(get_banking_system)
):
    """Create a new account with zero balance"""
    view = system.create_account(request.first_name, request.last_name, request.password)
    return AccountResponse.from_view(view)


@router.get("/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: int,
    account_number: int = Depends(get_current_account_number),
    system: BankingSystem = Depends(get_banking_system)
):
    """Get account details"""
    return AccountResponse.from_view(system.get_account(account_id))


@router.patch("/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: int,
    request: UpdateAccountRequest,
    account_number: int = Depends(get_current_account_number),
    system: BankingSystem = Depends(get_banking_system)
):
    """Change the name or password of the caller's own account"""
    _require_owner(system, account_id, account_number)
    view = system.update_account(
        account_id,
        first_name=request.first_name,
        last_name=request.last_name,
        password=request.password
    )
    return AccountResponse.from_view(view)


@router.delete("/{account_id}")
def delete_account(
    account_id: int,
    account_number: int = Depends(get_current_account_number),
    system: BankingSystem = Depends(get_banking_system)
):
    """Delete the caller's own account"""
    _require_owner(system, account_id, account_number)
    system.delete_account(account_id)
    return {"deleted": account_id}
