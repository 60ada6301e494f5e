"""
Transfer endpoints
"""

from fastapi import APIRouter, Depends

from .auth import get_banking_system, get_current_account_number
from .schemas import TransferRequest, TransferResponse
from ..system import BankingSystem


router = APIRouter()


@router.post("", response_model=TransferResponse)
def transfer(
    request: TransferRequest,
    account_number: int = Depends(get_current_account_number),
    system: BankingSystem = Depends(get_banking_system)
):
    """Transfer money from the caller's account to another account"""
    result = system.transfer(account_number, request.to_account, request.amount)
    return TransferResponse.from_result(result)
