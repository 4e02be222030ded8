"""
Error taxonomy for device-dna.

Transport errors are raised by the request gateway, job errors by the
export job poller, identity errors by the identity resolver. Collection
steps catch DeviceDNAError subclasses and record them in the issue ledger;
only IdentityUnresolvedError raised from the run itself is fatal.
"""

from typing import Any, Dict, Optional


class DeviceDNAError(Exception):
    """Base exception for all device-dna errors."""
    pass


class ConfigurationError(DeviceDNAError):
    """Configuration is missing or inconsistent."""
    pass


class AuthenticationError(DeviceDNAError):
    """Token acquisition against the identity platform failed."""
    pass


class NotConnectedError(DeviceDNAError):
    """A Graph call was attempted without a connected session."""

    def __init__(self, message: str = "Not connected to Microsoft Graph"):
        super().__init__(message)


# =============================================================================
# Transport
# =============================================================================


class TransportError(DeviceDNAError):
    """An HTTP call to the management API failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[Dict[str, Any]] = None,
        url: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response = response or {}
        self.url = url


class RetriableTransportError(TransportError):
    """Throttling (429), server error (5xx) or a dropped connection."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[Dict[str, Any]] = None,
        url: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code=status_code, response=response, url=url)
        self.retry_after = retry_after


class NonRetriableTransportError(TransportError):
    """Any other HTTP failure. Surfaced to the caller immediately."""
    pass


class MaxRetriesExceededError(TransportError):
    """All attempts for a request failed with retriable errors."""

    def __init__(self, attempts: int, last_error: TransportError):
        super().__init__(
            f"Request failed after {attempts} attempts: {last_error}",
            status_code=last_error.status_code,
            response=last_error.response,
            url=last_error.url,
        )
        self.attempts = attempts
        self.last_error = last_error


# =============================================================================
# Export jobs
# =============================================================================


class JobError(DeviceDNAError):
    """Base class for export job failures."""

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id


class JobFailedError(JobError):
    """The service reported the export job as failed."""
    pass


class JobTimeoutError(JobError):
    """
    The export job did not finish within its wait limit.

    Distinct from an empty result: the data is unknown, not absent.
    """

    def __init__(self, message: str, job_id: Optional[str] = None, waited_seconds: float = 0.0):
        super().__init__(message, job_id=job_id)
        self.waited_seconds = waited_seconds


class ParseError(DeviceDNAError):
    """A downloaded payload could not be decoded."""
    pass


# =============================================================================
# Identity
# =============================================================================


class IdentityError(DeviceDNAError):
    """Base class for identity resolution failures."""

    def __init__(self, message: str, device_name: Optional[str] = None):
        super().__init__(message)
        self.device_name = device_name


class IdentityUnresolvedError(IdentityError):
    """A required identifier is missing; the dependent step cannot proceed."""
    pass


class IdentityPartialError(IdentityError):
    """An optional identifier is missing; the dependent step is skipped."""
    pass


# =============================================================================
# Probes
# =============================================================================


class ProbeError(DeviceDNAError):
    """A local or remote probe failed to run or returned no usable output."""

    def __init__(self, message: str, probe_id: Optional[str] = None):
        super().__init__(message)
        self.probe_id = probe_id
