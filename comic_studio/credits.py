"""
Credit ledger gating paid operations.
"""

import logging
import threading
from typing import Optional


logger = logging.getLogger(__name__)


# Costs per billed operation
STORY_STRUCTURING_COST = 2
PANEL_COST = 3
REGENERATE_COST = 2
EXPORT_COST = 2

DEFAULT_STARTING_CREDITS = 100


class InsufficientCreditsError(Exception):
    """Raised when a billed operation cannot be paid for."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Not enough credits: {required} required, {available} available"
        )


class CreditLedger:
    """Single non-negative credit balance with indivisible check-and-debit."""

    def __init__(
        self,
        credits: int = DEFAULT_STARTING_CREDITS,
        lock: Optional[threading.RLock] = None,
    ):
        """
        Initialize ledger.

        Args:
            credits: Opening balance
            lock: Lock to serialise balance changes; the store passes its own
                so that debits and record mutations share one critical section
        """
        if credits < 0:
            raise ValueError("credits must not be negative")
        self._credits = credits
        self._lock = lock if lock is not None else threading.RLock()

    @property
    def credits(self) -> int:
        return self._credits

    def add_credits(self, amount: int) -> int:
        """Add credits and return the new balance."""
        if amount < 0:
            raise ValueError("amount must not be negative")
        with self._lock:
            self._credits += amount
            return self._credits

    def use_credits(self, amount: int) -> bool:
        """
        Debit amount if the balance covers it.

        Returns:
            True if debited, False if refused (balance unchanged)
        """
        if amount < 0:
            raise ValueError("amount must not be negative")
        with self._lock:
            if self._credits >= amount:
                self._credits -= amount
                return True
        logger.info(f"Refused debit of {amount} credits (balance {self._credits})")
        return False

    def charge(self, amount: int) -> None:
        """
        Debit amount or raise.

        Raises:
            InsufficientCreditsError: If the balance does not cover amount
        """
        if not self.use_credits(amount):
            raise InsufficientCreditsError(amount, self._credits)
