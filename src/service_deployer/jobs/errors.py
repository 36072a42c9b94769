"""Exceptions raised by the scheduled reconciliation jobs."""


class JobError(Exception):
    """Base exception for a scheduled job that cannot complete its check."""

    error_code = "JOB-GENERAL-001"


class DnsProbeError(JobError):
    """Raised when the current WAN IP cannot be determined."""

    error_code = "DNS-PROBE-001"


class CertParseError(JobError):
    """Raised when no certificate status can be read from certbot."""

    error_code = "CERT-PARSE-001"

    def __init__(self, message: str, output: str = "") -> None:
        self.output = output
        super().__init__(message)


class CertRenewError(JobError):
    """Raised when certbot renewal of a certificate fails."""

    error_code = "CERT-RENEW-001"
