"""
Directory Module

Shopkeeper and customer records referenced by loans. The loan core only
reads display summaries from them and, for shopkeepers, draws down the
prepaid application token balance.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from .errors import ConcurrencyConflict, InsufficientBalance, NotFoundError, ValidationError
from .storage import StorageInterface


logger = logging.getLogger("loan_desk.directories")


@dataclass(frozen=True)
class ShopkeeperSummary:
    """Display fields for a loan's owning agent"""
    id: str
    shop_name: str
    owner_name: str
    phone: Optional[str] = None
    city: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            '_id': self.id,
            'shopName': self.shop_name,
            'ownerName': self.owner_name,
            'phoneNumber': self.phone,
            'city': self.city,
        }


@dataclass(frozen=True)
class CustomerSummary:
    """Display fields for a loan's customer"""
    id: str
    full_name: str
    phone: Optional[str] = None
    email: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            '_id': self.id,
            'fullName': self.full_name,
            'phone': self.phone,
            'email': self.email,
        }


class ShopkeeperDirectory(ABC):
    """Read access to shopkeepers plus their token balance"""

    @abstractmethod
    def get_summary(self, shopkeeper_id: str) -> Optional[ShopkeeperSummary]:
        pass

    @abstractmethod
    def get_token_balance(self, shopkeeper_id: str) -> int:
        pass

    @abstractmethod
    def debit_tokens(self, shopkeeper_id: str, amount: int) -> int:
        """Take tokens; raises InsufficientBalance below the amount. Returns the new balance."""
        pass

    @abstractmethod
    def credit_tokens(self, shopkeeper_id: str, amount: int) -> int:
        pass


class CustomerDirectory(ABC):
    """Read access to customers"""

    @abstractmethod
    def get_summary(self, customer_id: str) -> Optional[CustomerSummary]:
        pass


class StorageShopkeeperDirectory(ShopkeeperDirectory):
    """Shopkeeper directory kept in the document store"""

    def __init__(self, storage: StorageInterface, table: str = "shopkeepers", max_retries: int = 5):
        self.storage = storage
        self.table = table
        self.max_retries = max_retries

    def register(
        self,
        shopkeeper_id: str,
        shop_name: str,
        owner_name: str,
        phone: Optional[str] = None,
        city: Optional[str] = None,
        token_balance: int = 0
    ) -> ShopkeeperSummary:
        if token_balance < 0:
            raise ValidationError("Token balance cannot be negative")
        now = datetime.now(timezone.utc).isoformat()
        record = {
            'id': shopkeeper_id,
            'shop_name': shop_name,
            'owner_name': owner_name,
            'phone': phone,
            'city': city,
            'token_balance': token_balance,
            'version': 1,
            'created_at': now,
            'updated_at': now,
        }
        if not self.storage.compare_and_swap(self.table, shopkeeper_id, record, None):
            raise ValidationError(f"Shopkeeper {shopkeeper_id} already registered")
        return self._summary(record)

    @staticmethod
    def _summary(record: Dict[str, Any]) -> ShopkeeperSummary:
        return ShopkeeperSummary(
            id=record['id'],
            shop_name=record['shop_name'],
            owner_name=record['owner_name'],
            phone=record.get('phone'),
            city=record.get('city')
        )

    def _load(self, shopkeeper_id: str) -> Dict[str, Any]:
        record = self.storage.load(self.table, shopkeeper_id)
        if record is None:
            raise NotFoundError(f"Shopkeeper {shopkeeper_id} not found", {"shopkeeper_id": shopkeeper_id})
        return record

    def get_summary(self, shopkeeper_id: str) -> Optional[ShopkeeperSummary]:
        record = self.storage.load(self.table, shopkeeper_id)
        return self._summary(record) if record else None

    def get_token_balance(self, shopkeeper_id: str) -> int:
        return self._load(shopkeeper_id).get('token_balance', 0)

    def _adjust(self, shopkeeper_id: str, delta: int) -> int:
        for _ in range(self.max_retries):
            record = self._load(shopkeeper_id)
            balance = record.get('token_balance', 0)
            if balance + delta < 0:
                raise InsufficientBalance(
                    "Insufficient token balance to submit an application",
                    {"shopkeeper_id": shopkeeper_id, "balance": balance, "required": -delta}
                )
            expected = record.get('version', 0)
            record['token_balance'] = balance + delta
            record['version'] = expected + 1
            record['updated_at'] = datetime.now(timezone.utc).isoformat()
            if self.storage.compare_and_swap(self.table, shopkeeper_id, record, expected):
                return record['token_balance']
            logger.warning(f"Token balance conflict on shopkeeper {shopkeeper_id}, retrying")
        raise ConcurrencyConflict(
            f"Could not update token balance for shopkeeper {shopkeeper_id}",
            {"shopkeeper_id": shopkeeper_id, "attempts": self.max_retries}
        )

    def debit_tokens(self, shopkeeper_id: str, amount: int) -> int:
        if amount <= 0:
            raise ValidationError("Token amount must be positive")
        return self._adjust(shopkeeper_id, -amount)

    def credit_tokens(self, shopkeeper_id: str, amount: int) -> int:
        if amount <= 0:
            raise ValidationError("Token amount must be positive")
        return self._adjust(shopkeeper_id, amount)


class StorageCustomerDirectory(CustomerDirectory):
    """Customer directory kept in the document store"""

    def __init__(self, storage: StorageInterface, table: str = "customers"):
        self.storage = storage
        self.table = table

    def register(
        self,
        customer_id: str,
        full_name: str,
        phone: Optional[str] = None,
        email: Optional[str] = None
    ) -> CustomerSummary:
        now = datetime.now(timezone.utc).isoformat()
        record = {
            'id': customer_id,
            'full_name': full_name,
            'phone': phone,
            'email': email,
            'version': 1,
            'created_at': now,
            'updated_at': now,
        }
        if not self.storage.compare_and_swap(self.table, customer_id, record, None):
            raise ValidationError(f"Customer {customer_id} already registered")
        return CustomerSummary(id=customer_id, full_name=full_name, phone=phone, email=email)

    def get_summary(self, customer_id: str) -> Optional[CustomerSummary]:
        record = self.storage.load(self.table, customer_id)
        if record is None:
            return None
        return CustomerSummary(
            id=record['id'],
            full_name=record['full_name'],
            phone=record.get('phone'),
            email=record.get('email')
        )
