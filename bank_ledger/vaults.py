"""
Vault Store Module

Bank-held reserve pools keyed by a unique name.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import List, Optional

from .exceptions import AlreadyExistsError, NotFoundError
from .money import Amount, Numeric
from .storage import StorageInterface, StorageRecord


@dataclass
class Vault(StorageRecord):
    """Vault tracks funds stored by the bank; ``id`` is the vault name"""
    balance: Amount

    @property
    def name(self) -> str:
        return self.id


class VaultStore:
    """
    Data store for bank vaults
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "vaults"

    def create_vault(self, name: str, initial_amount: Numeric = 0) -> Vault:
        """Create a vault; names are unique"""
        if not name:
            raise ValueError("Vault name must be non-empty")
        now = datetime.now(timezone.utc)
        vault = Vault(id=name, created_at=now, updated_at=now, balance=Amount.of(initial_amount))
        try:
            self.storage.insert(self.table, vault.id, vault.to_dict())
        except AlreadyExistsError:
            raise AlreadyExistsError(f"vault '{name}' already exists")
        return vault

    def find(self, name: str) -> Vault:
        """Get vault by name, raising NotFoundError if absent"""
        data = self.storage.load(self.table, name)
        if data is None:
            raise NotFoundError("vault", name)
        return Vault.from_dict(data)

    def list_vaults(self) -> List[Vault]:
        return [Vault.from_dict(data) for data in self.storage.load_all(self.table)]

    def increment(self, name: str, amount: Numeric) -> Vault:
        return self.transact(name, Amount.of(amount))

    def decrement(self, name: str, amount: Numeric, floor: Optional[Numeric] = None) -> Vault:
        return self.transact(name, -Amount.of(amount), floor)

    def transact(self, name: str, delta: Amount, floor: Optional[Numeric] = None) -> Vault:
        """Add a signed delta to the vault balance in one atomic update"""
        floor_value = Amount.of(floor).value if floor is not None else None
        data = self.storage.increment(self.table, name, "balance", Amount.of(delta).value, floor_value)
        if data is None:
            raise NotFoundError("vault", name)
        return Vault.from_dict(data)
