"""
Pydantic schemas for API requests and responses
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from ..accounts import AccountView
from ..transfers import TransferResult


# Account schemas
class CreateAccountRequest(BaseModel):
    first_name: str
    last_name: str
    password: str


class UpdateAccountRequest(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    password: Optional[str] = None


class AccountResponse(BaseModel):
    id: int
    first_name: str
    last_name: str
    number: int
    balance: int = Field(..., description="Balance in the smallest currency unit")
    created_at: datetime

    @classmethod
    def from_view(cls, view: AccountView) -> 'AccountResponse':
        return cls(
            id=view.id,
            first_name=view.first_name,
            last_name=view.last_name,
            number=view.number,
            balance=view.balance,
            created_at=view.created_at
        )


# Auth schemas
class LoginRequest(BaseModel):
    number: int
    password: str


class LoginResponse(BaseModel):
    number: int
    token: str


# Transfer schemas
class TransferRequest(BaseModel):
    to_account: int = Field(..., description="Destination account number")
    amount: int = Field(..., description="Amount in the smallest currency unit")


class TransferResponse(BaseModel):
    status: str = "transfer successful"
    from_account: int
    to_account: int
    amount: int
    balance: int = Field(..., description="Source balance after the transfer")

    @classmethod
    def from_result(cls, result: TransferResult) -> 'TransferResponse':
        return cls(
            from_account=result.from_number,
            to_account=result.to_number,
            amount=result.amount,
            balance=result.from_balance
        )
