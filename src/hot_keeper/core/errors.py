"""Error taxonomy for the reload orchestrator.

Every error carries a ``fatal`` flag. Fatal errors end the process with exit
status 1; non-fatal ones are logged and the watcher keeps running.
"""


class HotKeeperError(Exception):
    """Base class for all hot-keeper errors."""

    fatal = True


class ConfigInvalid(HotKeeperError):
    """Raised when the configuration cannot be used (e.g. secure without certs)."""


class CertificateMissing(HotKeeperError):
    """Raised when the TLS certificate or key file is absent."""

    def __init__(self, cert_path, key_path):
        super().__init__(f"SSL certificates not found at {cert_path} or {key_path}")
        self.cert_path = cert_path
        self.key_path = key_path


class BindFailure(HotKeeperError):
    """Raised when a listener generation cannot bind its port.

    Fatal on the first start; on a later restart the orchestrator degrades to
    having no active listener instead.
    """


class ReloadFailure(HotKeeperError):
    """Raised when the entry module cannot be (re)loaded."""

    fatal = False


class AppContractError(ReloadFailure):
    """Raised when the loaded entry object is neither a handler nor a listener."""


class ShutdownTimeout(HotKeeperError):
    """Raised internally when a graceful drain misses its deadline."""

    fatal = False


class ShutdownFatal(HotKeeperError):
    """Raised when a listener does not close even after forcing connections shut."""


class WatcherFailure(HotKeeperError):
    """Raised when the file watcher cannot start or dies while running."""
