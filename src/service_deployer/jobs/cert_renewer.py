"""CertRenewer - threshold-based renewal of certbot certificates.

Each certificate is judged on its own expiry: certificates issued at
different times are never assumed to expire together.

The job copies renewed key material out of the certbot live directory, so it
is expected to run from root's crontab.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
import logging
import os
import re
import shutil
import subprocess

from service_deployer.correlation import get_correlation_id
from service_deployer.jobs.errors import CertParseError, CertRenewError
from service_deployer.logging_utils import format_error_log
from service_deployer.utils.config_manager import CertConfig

logger = logging.getLogger(__name__)

_CERT_NAME = re.compile(r"^\s*Certificate Name:\s*(?P<name>\S+)\s*$", re.MULTILINE)
_DOMAINS = re.compile(r"^\s*Domains:\s*(?P<domains>.+?)\s*$", re.MULTILINE)
_VALID_DAYS = re.compile(r"\(VALID:\s*(?P<days>\d+)\s+days?\)")
_INVALID = re.compile(r"\(INVALID:[^)]*\)")


@dataclass
class CertStatus:
    """Expiry state and renewal outcome of one certificate."""

    name: str
    domains: List[str]
    days_valid: int
    renewed: bool = False
    days_valid_after: Optional[int] = None
    copied_files: List[str] = field(default_factory=list)
    error: Optional[str] = None


def parse_certificates(output: str) -> List[CertStatus]:
    """Parse `certbot certificates` output into one status per certificate.

    An INVALID (expired or revoked) certificate counts as 0 days valid.
    """
    statuses = []
    matches = list(_CERT_NAME.finditer(output))
    for index, match in enumerate(matches):
        end = matches[index + 1].start() if index + 1 < len(matches) else len(output)
        block = output[match.end():end]

        days_match = _VALID_DAYS.search(block)
        if days_match:
            days_valid = int(days_match.group("days"))
        elif _INVALID.search(block):
            days_valid = 0
        else:
            continue

        domains_match = _DOMAINS.search(block)
        domains = domains_match.group("domains").split() if domains_match else []
        statuses.append(
            CertStatus(name=match.group("name"), domains=domains, days_valid=days_valid)
        )
    return statuses


class CertRenewer:
    """Renews certificates close to expiry and publishes the renewed files."""

    def __init__(self, config: CertConfig):
        """Initialize CertRenewer.

        Args:
            config: Certificate section of the deployer configuration
        """
        self.config = config

    def _certbot(self, *args: str) -> subprocess.CompletedProcess:
        command = [self.config.certbot_binary, *args]
        if self.config.use_sudo:
            command = ["sudo", *command]
        return subprocess.run(command, capture_output=True, text=True)

    def query(self) -> List[CertStatus]:
        """Return the expiry state of every certificate certbot manages.

        Raises:
            CertParseError: certbot failed or listed no readable certificate
        """
        try:
            result = self._certbot("certificates")
        except OSError as e:
            raise CertParseError(f"Could not run certbot: {e}") from e

        statuses = parse_certificates(result.stdout or "")
        if not statuses:
            raise CertParseError(
                "Could not extract days valid from certbot output",
                output=(result.stdout or "") + (result.stderr or ""),
            )
        return statuses

    def renew(self, status: CertStatus) -> None:
        """Renew one certificate.

        Raises:
            CertRenewError: certbot renew failed
        """
        logger.info(
            f"{status.name}: {status.days_valid} days left, renewing",
            extra={"correlation_id": get_correlation_id()},
        )
        try:
            result = self._certbot("renew", "--cert-name", status.name, "--quiet")
        except OSError as e:
            raise CertRenewError(f"{status.name}: could not run certbot: {e}") from e
        if result.returncode != 0:
            raise CertRenewError(
                f"{status.name}: certbot renew failed with exit code "
                f"{result.returncode}: {result.stderr.strip()}"
            )

    def publish(self, status: CertStatus) -> List[str]:
        """Copy the renewed files to <dest_root>/<name>/ readable by the owner only."""
        if not self.config.dest_root:
            return []

        source_dir = Path(self.config.live_dir) / status.name
        dest_dir = Path(self.config.dest_root) / status.name
        dest_dir.mkdir(parents=True, exist_ok=True)

        copied = []
        for file_name in self.config.file_names:
            source = source_dir / file_name
            dest = dest_dir / file_name
            # Restricted before the first byte is written
            fd = os.open(dest, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "wb") as dst, open(source, "rb") as src:
                shutil.copyfileobj(src, dst)
            if self.config.owner:
                shutil.chown(dest, user=self.config.owner, group=self.config.group or None)
            copied.append(str(dest))
        logger.info(
            f"{status.name}: copied {', '.join(self.config.file_names)} to {dest_dir}",
            extra={"correlation_id": get_correlation_id()},
        )
        return copied

    def run(self) -> List[CertStatus]:
        """Run one renewal check.

        Per-certificate failures are recorded on the returned statuses and do
        not stop the other certificates.

        Raises:
            CertParseError: No certificate status could be read
        """
        logger.info(
            "START: Checking certificate validity...",
            extra={"correlation_id": get_correlation_id()},
        )
        statuses = self.query()
        for status in statuses:
            logger.info(
                f"{status.name} ({' '.join(status.domains)}): valid for {status.days_valid} days",
                extra={"correlation_id": get_correlation_id()},
            )

        due = [s for s in statuses if s.days_valid <= self.config.threshold_days]
        if not due:
            logger.info(
                f"All certificates have more than {self.config.threshold_days} days "
                "until expiration",
                extra={"correlation_id": get_correlation_id()},
            )
            return statuses

        for status in due:
            try:
                self.renew(status)
                status.renewed = True
            except CertRenewError as e:
                status.error = str(e)
                logger.error(
                    format_error_log(e.error_code, str(e)),
                    extra={"correlation_id": get_correlation_id()},
                )

        renewed = [s for s in due if s.renewed]
        if renewed:
            after = {s.name: s.days_valid for s in self.query()}
            for status in renewed:
                status.days_valid_after = after.get(status.name)
                logger.info(
                    f"{status.name}: valid for {status.days_valid_after} days after renewal",
                    extra={"correlation_id": get_correlation_id()},
                )
                try:
                    status.copied_files = self.publish(status)
                except OSError as e:
                    status.error = f"copy failed: {e}"
                    logger.error(
                        format_error_log(
                            "CERT-COPY-001", f"{status.name}: copying renewed files failed: {e}"
                        ),
                        extra={"correlation_id": get_correlation_id()},
                    )

        logger.info(
            "END: Certificate renewal check complete.",
            extra={"correlation_id": get_correlation_id()},
        )
        return statuses
