from typing import Optional


class ProvisioningError(Exception):
    """
    Base class for every error raised by the provisioning engine.

    `kind` is the short name recorded on a failed InstallJob.
    """

    kind = "ProvisioningError"


class UnknownApp(ProvisioningError):
    """
    Raised when the catalog does not recognise an app id
    """

    kind = "UnknownApp"


class CatalogUnavailable(ProvisioningError):
    """
    Raised when the catalog source cannot be reached and
    no cached entry exists for the requested app
    """

    kind = "CatalogUnavailable"


class TransferError(ProvisioningError):
    """
    Raised when the transfer tool fails (network or tooling failure).
    Retryable.
    """

    kind = "TransferError"


class VerificationError(ProvisioningError):
    """
    Raised when an install does not match the catalog's expected version
    after the verification re-download
    """

    kind = "VerificationError"


class WorkshopSyncError(ProvisioningError):
    kind = "WorkshopSyncError"

    def __init__(self, item_id: str, message: Optional[str] = None) -> None:
        self.item_id = item_id
        super().__init__(message or f"Workshop item {item_id} failed to sync")


class PathBusy(ProvisioningError):
    kind = "PathBusy"


class ProbeError(ProvisioningError):
    """
    Raised when a server answers a status query with a malformed reply
    """

    kind = "ProbeError"


class Cancelled(ProvisioningError):
    """
    Raised inside a job when its cancellation flag is observed. Not a failure.
    """

    kind = "Cancelled"


class JobNotFound(ProvisioningError):
    kind = "JobNotFound"


class InvalidTransition(ProvisioningError):
    kind = "InvalidTransition"


class UnsupportedPlatform(ProvisioningError):
    """
    Raised when the catalog does not list the running platform
    for an app's dedicated server
    """

    kind = "UnsupportedPlatform"


class NotInstalled(ProvisioningError):
    kind = "NotInstalled"
