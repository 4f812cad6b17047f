from __future__ import annotations


class CometscanError(Exception):
    """Base for everything this package raises on purpose."""


class ProviderError(CometscanError):
    """Upstream transport failure, non-2xx reply or an error envelope."""


class RangeTooWide(CometscanError, ValueError):
    def __init__(self, from_block: int, to_block: int, max_span: int) -> None:
        super().__init__(f"block range {from_block}-{to_block} exceeds max span {max_span}")
        self.from_block = from_block
        self.to_block = to_block
        self.max_span = max_span


class StorageError(CometscanError):
    pass


class StorageUnavailable(StorageError):
    """Raised at startup; the control loop must not begin."""


class InvalidRange(CometscanError, ValueError):
    pass


class InvalidDate(InvalidRange):
    pass


class UnknownEventType(CometscanError, ValueError):
    pass


class ConfigError(CometscanError, EnvironmentError):
    pass
