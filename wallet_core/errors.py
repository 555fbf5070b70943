"""
Error Taxonomy

Validation and business-rule errors are deterministic and go back to the
caller untouched. DuplicateIdentifier is retried by the allocator before it
surfaces. DependencyUnavailable is never retried inside the core.
"""

from typing import Optional


class WalletCoreError(Exception):
    """Base class for every error raised by the wallet core"""


class ValidationError(WalletCoreError, ValueError):
    """Malformed or out-of-range input"""


class InvalidAmount(ValidationError):
    """Non-positive or malformed amount"""


class InsufficientFunds(WalletCoreError, ValueError):
    """Debit exceeds the available sub-balance"""

    def __init__(self, message: str, available=None, requested=None):
        super().__init__(message)
        self.available = available
        self.requested = requested


class IllegalStateTransition(WalletCoreError, ValueError):
    """Transition attempted from a terminal or mismatched state"""

    def __init__(self, entity: str, entity_id: str, current: str, target: str):
        super().__init__(
            f"Cannot move {entity} {entity_id} from {current} to {target}"
        )
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.target = target


class NotFound(WalletCoreError, LookupError):
    """Unknown identifier"""

    def __init__(self, entity: str, key: str):
        super().__init__(f"{entity} {key} not found")
        self.entity = entity
        self.key = key


class DuplicateIdentifier(WalletCoreError, ValueError):
    """Write rejected by a storage uniqueness constraint"""

    def __init__(self, table: str, field: str, value: str):
        super().__init__(f"Duplicate {field}={value!r} in {table}")
        self.table = table
        self.field = field
        self.value = value


class IdentifierAllocationFailed(DuplicateIdentifier):
    """Every allocation attempt collided"""

    def __init__(self, kind: str, attempts: int, last: Optional[DuplicateIdentifier] = None):
        WalletCoreError.__init__(
            self, f"Could not allocate a unique {kind} identifier after {attempts} attempts"
        )
        self.table = last.table if last else kind
        self.field = last.field if last else "id"
        self.value = last.value if last else ""
        self.kind = kind
        self.attempts = attempts


class DependencyUnavailable(WalletCoreError, RuntimeError):
    """Storage or fee schedule could not be reached"""
