from spin_bridge.errors import InsufficientFunds


class BalanceLedger:
    """
    Confirmed balance plus the amount reserved against unresolved bets.

    Only the authority mutates a ledger; all amounts are integer atomic units.
    """

    def __init__(self, confirmed: int = 0):
        self.confirmed = confirmed
        self.reserved = 0

    @property
    def available(self) -> int:
        return max(0, self.confirmed - self.reserved)

    def reserve(self, amount: int, queued_count: int = 0) -> None:
        if amount < 0:
            raise ValueError("reservation amount must not be negative")
        if amount > self.available:
            raise InsufficientFunds(amount, self.available, queued_count)
        self.reserved += amount

    def release(self, amount: int) -> None:
        self.reserved = max(0, self.reserved - amount)

    def set_confirmed(self, amount: int) -> None:
        self.confirmed = amount

    def as_dict(self) -> dict:
        return {
            "confirmed": self.confirmed,
            "reserved": self.reserved,
            "available": self.available,
        }
