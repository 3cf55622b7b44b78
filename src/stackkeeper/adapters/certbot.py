"""Certificate issuer backed by the certbot and openssl command-line tools."""

import re
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

from stackkeeper.adapters.base import CertificateIssuer
from stackkeeper.adapters.process import remaining_time, run_command
from stackkeeper.resources.models import CertificateState, utcnow
from stackkeeper.utils.errors import IssuanceError
from stackkeeper.utils.logging import get_logger

logger = get_logger(__name__)

OPENSSL_DATE_FORMAT = "%b %d %H:%M:%S %Y %Z"

_FINGERPRINT_RE = re.compile(r"^sha256 fingerprint$", re.IGNORECASE)


def parse_openssl_date(value: str) -> datetime:
    """Parse ``notAfter=Mar  1 12:00:00 2025 GMT`` style dates as UTC."""
    normalized = " ".join(value.split())
    return datetime.strptime(normalized, OPENSSL_DATE_FORMAT).replace(tzinfo=timezone.utc)


def parse_x509_output(domain: str, output: str) -> CertificateState:
    """Build a CertificateState from ``openssl x509 -noout`` field output.

    Raises:
        IssuanceError: If a required field is missing or malformed
    """
    fields: Dict[str, str] = {}
    for line in output.splitlines():
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        if _FINGERPRINT_RE.match(key):
            key = "fingerprint"
        fields[key] = value.strip()

    try:
        return CertificateState(
            domain=domain,
            issuer=fields.get("issuer", ""),
            not_before=parse_openssl_date(fields["notBefore"]),
            not_after=parse_openssl_date(fields["notAfter"]),
            fingerprint=fields["fingerprint"].replace(":", "").lower(),
        )
    except (KeyError, ValueError) as e:
        raise IssuanceError(
            f"Unable to parse certificate for {domain}: {e}",
            cause=e
        ) from e


class CertbotIssuer(CertificateIssuer):
    """Runs ``certbot certonly`` and reads the live certificate with openssl."""

    def __init__(
        self,
        live_dir: str = "/etc/letsencrypt/live",
        certbot_bin: str = "certbot",
        openssl_bin: str = "openssl",
        authenticator: str = "nginx",
        server: Optional[str] = None,
        eab_kid: Optional[str] = None,
        eab_hmac_key: Optional[str] = None,
        staging: bool = False
    ):
        """Initialize certbot issuer.

        Args:
            live_dir: Directory holding ``<domain>/cert.pem`` lineages
            certbot_bin: certbot executable
            openssl_bin: openssl executable
            authenticator: certbot authenticator plugin (nginx, webroot, standalone)
            server: ACME directory URL, certbot default when None
            eab_kid: External account binding key id
            eab_hmac_key: External account binding HMAC key
            staging: Use the CA's staging environment
        """
        self.live_dir = Path(live_dir)
        self.certbot_bin = certbot_bin
        self.openssl_bin = openssl_bin
        self.authenticator = authenticator
        self.server = server
        self.eab_kid = eab_kid
        self.eab_hmac_key = eab_hmac_key
        self.staging = staging

    def certificate_path(self, domain: str) -> Path:
        return self.live_dir / domain / "cert.pem"

    def inspect(self, domain: str, *, timeout: float = 30.0) -> Optional[CertificateState]:
        """Read the live certificate for ``domain``.

        Returns:
            CertificateState, or None if no lineage exists
        """
        path = self.certificate_path(domain)
        if not path.exists():
            logger.debug(f"No certificate at {path}")
            return None

        result = run_command(
            [
                self.openssl_bin, "x509", "-in", str(path), "-noout",
                "-issuer", "-startdate", "-enddate", "-fingerprint", "-sha256",
            ],
            timeout=timeout,
            operation="inspect",
            error_cls=IssuanceError,
        )
        return parse_x509_output(domain, result.stdout)

    def issue(
        self,
        domain: str,
        email: str,
        *,
        renew_before: timedelta = timedelta(days=30),
        timeout: float = 300.0
    ) -> CertificateState:
        """Obtain or renew the certificate for ``domain``."""
        deadline = time.monotonic() + timeout
        current = self.inspect(domain, timeout=remaining_time(deadline, "issue"))
        if current is not None and current.not_after - utcnow() >= renew_before:
            logger.info(f"Certificate for {domain} valid until {current.not_after:%Y-%m-%d}, not renewing")
            return current

        cmd = self._build_command(domain, email, renew=current is not None)
        logger.info(f"{'Renewing' if current else 'Obtaining'} certificate for {domain}")
        run_command(cmd, timeout=remaining_time(deadline, "issue"), operation="issue", error_cls=IssuanceError)

        issued = self.inspect(domain, timeout=remaining_time(deadline, "issue"))
        if issued is None:
            raise IssuanceError(
                f"certbot reported success but no certificate exists at {self.certificate_path(domain)}",
                suggestions=["Check that live_dir matches certbot's --config-dir"]
            )
        return issued

    def _build_command(self, domain: str, email: str, renew: bool) -> List[str]:
        cmd = [
            self.certbot_bin, "certonly",
            f"--{self.authenticator}",
            "-d", domain,
            "--email", email,
            "--cert-name", domain,
            "--agree-tos",
            "--non-interactive",
        ]
        # certbot's own renewal window may be narrower than the configured one
        cmd.append("--force-renewal" if renew else "--keep-until-expiring")

        if self.server:
            cmd.extend(["--server", self.server])
        if self.eab_kid and self.eab_hmac_key:
            cmd.extend(["--eab-kid", self.eab_kid, "--eab-hmac-key", self.eab_hmac_key])
        if self.staging:
            cmd.append("--staging")
        return cmd
