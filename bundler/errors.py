"""Exceptions raised by the bundler core."""


class BundlerError(Exception):
    """Base class for bundler errors."""


class ConfigurationError(BundlerError):
    """Invalid configuration detected at initialization."""


class BundleNotFoundError(BundlerError):
    """Requested bundle does not exist."""
    
    def __init__(self, bundle_id: str):
        super().__init__(f"Bundle {bundle_id} not found")
        self.bundle_id = bundle_id
