"""Exception hierarchy shared by every component."""


class MinerError(Exception):
    """Base class for all miner errors."""


class ConfigurationError(MinerError):
    """Startup configuration is unusable."""


class NodeError(MinerError):
    """Node REST request failed, timed out, or reported success=false."""


class HashMismatchError(MinerError):
    """Recomputed block hash differs from the hash reported by a lane."""

    def __init__(self, reported: str, expected: str) -> None:
        super().__init__(f"computed={reported} expected={expected}")
        self.reported = reported
        self.expected = expected


class StratumProtocolError(MinerError):
    """Pool sent a message that does not follow the expected shape."""
