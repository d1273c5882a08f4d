"""
Taxonomie des erreurs du noyau stock.

Deux familles :
- résultats typés (ValidationError, NegativeBalanceError) : RETOURNÉS, jamais
  levés, pour que l'appelant (API, UI) les présente sans try/except global ;
- exceptions (ConflictError, ConfigurationError, ...) : levées par les stores
  ou à l'enregistrement d'une règle.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


# ---------- Résultats typés ----------
@dataclass(frozen=True)
class ValidationError:
    code: str
    message: str
    field: str | None = None

    @property
    def reason(self) -> str:
        return self.code


@dataclass(frozen=True)
class NegativeBalanceError:
    # operation_id None = l'opération candidate (pas encore persistée)
    operation_id: int | None
    balance: Decimal

    code = "negative_balance"

    @property
    def reason(self) -> str:
        return self.code

    @property
    def message(self) -> str:
        who = "candidate operation" if self.operation_id is None else f"operation {self.operation_id}"
        return f"Insufficient stock: {who} would bring balance to {self.balance}"


# ---------- Exceptions ----------
class StockError(Exception):
    """Base des exceptions du noyau."""


class ConflictError(StockError):
    """Écriture concurrente détectée par le store (révision du scope périmée)."""

    def __init__(self, expected: int | None, actual: int | None):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Concurrent write detected (expected revision={expected}, actual={actual})")


class ConfigurationError(StockError, ValueError):
    """Règle d'alerte malformée, détectée à l'enregistrement."""


class InvalidTransitionError(StockError):
    pass


class NotFoundError(StockError, LookupError):
    pass
