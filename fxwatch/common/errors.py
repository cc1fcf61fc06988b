class UnsupportedPairError(ValueError):
    def __init__(self, pair):
        super().__init__(f"Unsupported pair: {pair}")
        self.pair = pair


class PersistenceDisabled(RuntimeError):
    """Raised by the store layer when the durable store cannot be used at all."""
