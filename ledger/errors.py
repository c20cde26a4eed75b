class LedgerError(Exception):
    """Storage-layer failure in the position ledger."""


class PositionConflict(LedgerError):
    """An OPEN position already exists for the symbol."""

    def __init__(self, symbol: str):
        self.symbol = symbol
        super().__init__(f"OPEN position already exists for {symbol}")
