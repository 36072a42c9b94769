"""DnsUpdater - keeps Cloudflare A records pointed at the current WAN IP.

One pass reads each configured record and writes it only when its content
differs from the WAN IP, so repeated scheduled runs are idempotent.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional
import logging

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from service_deployer.correlation import get_correlation_id
from service_deployer.jobs.errors import DnsProbeError
from service_deployer.logging_utils import format_error_log, sanitize_for_logging
from service_deployer.utils.config_manager import DnsConfig, DnsRecordEntry

logger = logging.getLogger(__name__)

STATUS_UPDATED = "updated"
STATUS_UNCHANGED = "unchanged"
STATUS_FAILED = "failed"


class CloudflareMessage(BaseModel):
    """Error or message entry of a Cloudflare API response."""

    model_config = ConfigDict(extra="ignore")

    code: int = 0
    message: str = ""


class DnsRecord(BaseModel):
    """DNS record as returned by the Cloudflare API."""

    model_config = ConfigDict(extra="ignore")

    id: str = ""
    name: str = ""
    type: str = ""
    content: str = ""
    ttl: Optional[int] = None
    proxied: Optional[bool] = None


class CloudflareRecordResponse(BaseModel):
    """Envelope of a single-record Cloudflare API response."""

    model_config = ConfigDict(extra="ignore")

    success: bool = False
    errors: List[CloudflareMessage] = Field(default_factory=list)
    result: Optional[DnsRecord] = None


@dataclass
class DnsUpdateResult:
    """Outcome for one domain."""

    domain: str
    status: str
    ip: str
    previous_ip: Optional[str] = None
    message: str = ""


class DnsUpdater:
    """Reconciles configured A records with the WAN IP."""

    def __init__(self, config: DnsConfig, session: Optional[requests.Session] = None):
        """Initialize DnsUpdater.

        Args:
            config: DNS section of the deployer configuration
            session: HTTP session (default: a new requests.Session)
        """
        self.config = config
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_token:
            headers["Authorization"] = f"Bearer {self.config.api_token}"
        else:
            headers["X-Auth-Email"] = self.config.api_email
            headers["X-Auth-Key"] = self.config.api_key
        return headers

    def _record_url(self, record: DnsRecordEntry) -> str:
        base = self.config.api_base_url.rstrip("/")
        return f"{base}/zones/{record.zone_id}/dns_records/{record.record_id}"

    def get_wan_ip(self) -> str:
        """Return the public IP address of this host.

        Raises:
            DnsProbeError: The probe failed or returned nothing
        """
        try:
            response = self.session.get(
                self.config.ip_probe_url,
                timeout=self.config.request_timeout_seconds,
            )
        except requests.exceptions.RequestException as e:
            raise DnsProbeError(f"Failed to retrieve WAN IP: {e}") from e

        wan_ip = response.text.strip() if response.status_code == 200 else ""
        if not wan_ip:
            raise DnsProbeError(
                f"Failed to retrieve WAN IP (HTTP {response.status_code})"
            )
        return wan_ip

    def _parse(self, response: requests.Response) -> CloudflareRecordResponse:
        try:
            return CloudflareRecordResponse.model_validate(response.json())
        except (ValueError, ValidationError):
            return CloudflareRecordResponse(
                success=False,
                errors=[
                    CloudflareMessage(
                        code=response.status_code, message=response.text[:200]
                    )
                ],
            )

    def update_record(self, record: DnsRecordEntry, wan_ip: str) -> DnsUpdateResult:
        """Bring one record in line with the WAN IP; never raises for API errors."""
        url = self._record_url(record)
        try:
            current = self._parse(
                self.session.get(
                    url,
                    headers=self._headers(),
                    timeout=self.config.request_timeout_seconds,
                )
            )
            current_ip = current.result.content if current.result else None

            if current.success and current_ip == wan_ip:
                logger.info(
                    f"{record.domain}: IP unchanged ({wan_ip}), no update needed",
                    extra={"correlation_id": get_correlation_id()},
                )
                return DnsUpdateResult(
                    domain=record.domain,
                    status=STATUS_UNCHANGED,
                    ip=wan_ip,
                    previous_ip=current_ip,
                )

            payload = {
                "type": "A",
                "name": record.domain,
                "content": wan_ip,
                "ttl": self.config.ttl,
                "proxied": self.config.proxied,
            }
            updated = self._parse(
                self.session.put(
                    url,
                    headers=self._headers(),
                    json=payload,
                    timeout=self.config.request_timeout_seconds,
                )
            )
        except requests.exceptions.RequestException as e:
            logger.error(
                format_error_log(
                    "DNS-API-001", f"{record.domain}: request failed: {e}"
                ),
                extra={"correlation_id": get_correlation_id()},
            )
            return DnsUpdateResult(
                domain=record.domain, status=STATUS_FAILED, ip=wan_ip, message=str(e)
            )

        if updated.success:
            logger.info(
                f"{record.domain}: Successfully updated to IP {wan_ip}",
                extra={"correlation_id": get_correlation_id()},
            )
            return DnsUpdateResult(
                domain=record.domain,
                status=STATUS_UPDATED,
                ip=wan_ip,
                previous_ip=current_ip,
            )

        errors = "; ".join(f"{e.code}: {e.message}" for e in updated.errors)
        logger.error(
            format_error_log(
                "DNS-API-002",
                f"{record.domain}: Failed to update IP. Response errors: {errors}",
                headers=sanitize_for_logging(self._headers()),
            ),
            extra={"correlation_id": get_correlation_id()},
        )
        return DnsUpdateResult(
            domain=record.domain,
            status=STATUS_FAILED,
            ip=wan_ip,
            previous_ip=current_ip,
            message=errors,
        )

    def run(self) -> List[DnsUpdateResult]:
        """Run one reconciliation pass over every configured record.

        Raises:
            DnsProbeError: The WAN IP could not be determined
        """
        logger.info(
            "Starting DNS update", extra={"correlation_id": get_correlation_id()}
        )
        wan_ip = self.get_wan_ip()
        logger.info(
            f"Current WAN IP: {wan_ip}", extra={"correlation_id": get_correlation_id()}
        )

        results = [self.update_record(record, wan_ip) for record in self.config.records]

        logger.info(
            "DNS update completed", extra={"correlation_id": get_correlation_id()}
        )
        return results
