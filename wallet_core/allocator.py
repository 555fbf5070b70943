"""
Identifier Allocator

Human-readable identifiers for every financial record, in two styles:

- salted-random: ``PREFIX + yymmdd + [discriminator] + 8 hex chars`` drawn
  from uuid4 (OS CSPRNG). No existence check is made; uniqueness is
  enforced by a conditional insert, so callers go through
  ``allocate_and_insert`` which re-allocates on collision.
- sequential (safe deposits): ``SW0001`` .. ``SW9999``, then
  ``SW00000001`` onwards. Backed by an atomic storage counter that is
  seeded once from the highest existing identifier.
"""

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from .errors import DuplicateIdentifier, IdentifierAllocationFailed
from .logging_config import get_logger, log_action
from .storage import StorageInterface


class IdentifierKind(Enum):
    """Record kinds and their identifier prefixes"""
    TRANSACTION = "TXN"
    PAYMENT = "PAY"
    TOP_UP = "TOPUP"
    KYC = "KYC"
    BENEFICIARY = "BEN"
    FEE = "FEE"
    NOTIFICATION = "NTF"
    WALLET = "W"
    SAFE_DEPOSIT = "SW"

    @property
    def prefix(self) -> str:
        return self.value


SAFE_ID_PATTERN = re.compile(r'^SW(\d{4}|\d{8})$')
FOUR_DIGIT_LIMIT = 9999
EIGHT_DIGIT_LIMIT = 99999999


def format_safe_id(sequence: int) -> str:
    """
    Map a counter value onto the two-tier safe identifier space.

    1..9999 -> SW0001..SW9999; 10000 -> SW00000001; and so on.
    """
    if sequence < 1:
        raise ValueError(f"Safe sequence must start at 1, got {sequence}")
    if sequence <= FOUR_DIGIT_LIMIT:
        return f"SW{sequence:04d}"
    eight_digit = sequence - FOUR_DIGIT_LIMIT
    if eight_digit > EIGHT_DIGIT_LIMIT:
        raise IdentifierAllocationFailed(IdentifierKind.SAFE_DEPOSIT.name, 0)
    return f"SW{eight_digit:08d}"


def parse_safe_id(safe_id: str) -> Optional[tuple]:
    """Return (width, number) for a well-formed safe id, else None"""
    match = SAFE_ID_PATTERN.match(safe_id or "")
    if not match:
        return None
    digits = match.group(1)
    return len(digits), int(digits)


def random_token() -> str:
    return uuid.uuid4().hex[:8].upper()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class IdentifierAllocator:
    """Allocates identifiers; one instance is shared by every component"""

    SAFE_COUNTER = "safe_deposit_seq"

    def __init__(
        self,
        storage: StorageInterface,
        max_attempts: int = 5,
        clock: Callable[[], datetime] = utc_now,
        token_factory: Callable[[], str] = random_token,
        safe_table: str = "safe_deposits",
        safe_id_field: str = "safe_id"
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.storage = storage
        self.max_attempts = max_attempts
        self.clock = clock
        self.token_factory = token_factory
        self.safe_table = safe_table
        self.safe_id_field = safe_id_field
        self.logger = get_logger("wallet_core.allocator")

    def allocate(self, kind: IdentifierKind, discriminator: str = "") -> str:
        """
        Produce the next identifier for ``kind``.

        The discriminator is inserted between the date salt and the random
        token (``C``/``D`` for transactions, ``CC``/``BANK`` for beneficiaries).
        """
        if kind is IdentifierKind.SAFE_DEPOSIT:
            return self._next_sequential()

        now = self.clock()
        date_part = now.strftime("%y%m") if kind is IdentifierKind.WALLET else now.strftime("%y%m%d")
        return f"{kind.prefix}{date_part}{discriminator}{self.token_factory()}"

    def allocate_and_insert(
        self,
        kind: IdentifierKind,
        write: Callable[[str], None],
        discriminator: str = ""
    ) -> str:
        """
        Allocate an identifier and hand it to ``write``; if the write is
        rejected as a duplicate id, allocate again. Gives up after
        ``max_attempts`` collisions.

        Collisions on other unique fields (e.g. a second wallet for a user)
        are not allocation problems and propagate immediately.
        """
        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            identifier = self.allocate(kind, discriminator)
            try:
                write(identifier)
                return identifier
            except DuplicateIdentifier as e:
                if e.field != "id":
                    raise
                last_error = e
                log_action(
                    self.logger, "warning", f"Identifier collision for {kind.name}",
                    action="allocate_identifier", resource=f"{kind.name.lower()}:{identifier}",
                    extra={"attempt": attempt, "max_attempts": self.max_attempts}
                )

        log_action(
            self.logger, "error", f"Identifier allocation exhausted for {kind.name}",
            action="allocate_identifier", extra={"attempts": self.max_attempts}
        )
        raise IdentifierAllocationFailed(kind.name, self.max_attempts, last_error)

    def _next_sequential(self) -> str:
        with self.storage.atomic():
            if self.storage.get_counter(self.SAFE_COUNTER) is None:
                seed = self._seed_from_existing()
                self.storage.set_counter(self.SAFE_COUNTER, seed)
                log_action(
                    self.logger, "info", "Safe deposit counter initialized",
                    action="seed_counter", resource=f"counter:{self.SAFE_COUNTER}",
                    extra={"seed": seed}
                )
            sequence = self.storage.increment_counter(self.SAFE_COUNTER)
        return format_safe_id(sequence)

    def _seed_from_existing(self) -> int:
        """
        Counter value equivalent to the highest safe id already stored.

        A 4-digit tier that has not reached 9999 keeps going even if 8-digit
        ids exist, and restarts at SW0001 when no 4-digit id exists. Once 9999
        is taken, the 8-digit maximum continues.
        """
        max_four = None
        max_eight = None
        for record in self.storage.load_all(self.safe_table):
            parsed = parse_safe_id(record.get(self.safe_id_field))
            if parsed is None:
                continue
            width, number = parsed
            if width == 4:
                max_four = number if max_four is None else max(max_four, number)
            else:
                max_eight = number if max_eight is None else max(max_eight, number)

        if max_four is None:
            return 0
        if max_four < FOUR_DIGIT_LIMIT:
            return max_four
        return FOUR_DIGIT_LIMIT + (max_eight or 0)
