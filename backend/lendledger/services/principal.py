"""The authenticated caller as seen by the lending core."""

import enum
from dataclasses import dataclass


class Role(str, enum.Enum):
    BORROWER = "borrower"
    LENDER = "lender"
    BOTH = "both"
    ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def can_borrow(self) -> bool:
        return self.role in (Role.BORROWER, Role.BOTH)

    @property
    def can_lend(self) -> bool:
        return self.role in (Role.LENDER, Role.BOTH)
