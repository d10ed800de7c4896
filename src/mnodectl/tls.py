"""Client certificate helpers for mnodectl.

Marzban nodes authenticate the panel with a client certificate
(``ssl_client_cert.pem``). Operators supply it as a file, as inline content or
by pasting it interactively. The hard requirement is a PEM envelope; deeper
inspection with ``cryptography`` only produces informational findings.
"""
from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from cryptography import x509

from .errors import InvalidCertificateError

PEM_BEGIN = "-----BEGIN CERTIFICATE-----"
PEM_END = "-----END CERTIFICATE-----"
CERT_FILENAME = "ssl_client_cert.pem"
CERT_MODE = 0o600
WARN_EXPIRY_DAYS = 30


class CertificateSeverity(Enum):
    """Severities for certificate findings."""

    OK = "ok"
    WARNING = "warning"


@dataclass(frozen=True)
class CertificateFinding:
    """Individual inspection outcome."""

    check: str
    severity: CertificateSeverity
    message: str


@dataclass(frozen=True)
class CertificateReport:
    """Summary of a parsed client certificate."""

    subject: str | None
    not_valid_before: datetime | None
    not_valid_after: datetime | None
    findings: tuple[CertificateFinding, ...]

    @property
    def has_warnings(self) -> bool:
        """Return ``True`` when any finding is a warning."""
        return any(f.severity is CertificateSeverity.WARNING for f in self.findings)

    def warnings(self) -> list[str]:
        """Return warning messages only."""
        return [f.message for f in self.findings if f.severity is CertificateSeverity.WARNING]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation of the report."""
        return {
            "subject": self.subject,
            "not_valid_before": (
                self.not_valid_before.isoformat() if self.not_valid_before else None
            ),
            "not_valid_after": (
                self.not_valid_after.isoformat() if self.not_valid_after else None
            ),
            "findings": [
                {"check": f.check, "severity": f.severity.value, "message": f.message}
                for f in self.findings
            ],
        }


def validate_certificate_text(content: str | None) -> str:
    """Return *content* normalised when it carries a PEM certificate envelope."""
    if content is None or not content.strip():
        raise InvalidCertificateError("Certificate content is empty.")
    text = content.strip()
    if PEM_BEGIN not in text or PEM_END not in text:
        raise InvalidCertificateError(
            "Invalid certificate format. Expected a PEM block between "
            f"'{PEM_BEGIN}' and '{PEM_END}'."
        )
    return text + "\n"


def read_certificate_file(path: Path) -> str:
    """Read and validate the certificate stored at *path*."""
    path = Path(path).expanduser()
    if not path.is_file():
        raise InvalidCertificateError(f"Certificate file not found: {path}")
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise InvalidCertificateError(f"Cannot read certificate file {path}: {exc}") from exc
    return validate_certificate_text(content)


def inspect_certificate(
    content: str,
    *,
    now: datetime | None = None,
    warn_expiry_days: int = WARN_EXPIRY_DAYS,
) -> CertificateReport:
    """Parse *content* and report subject and validity window."""
    now = now or datetime.now(UTC)
    try:
        cert = x509.load_pem_x509_certificate(content.encode("utf-8"))
    except ValueError as exc:
        return CertificateReport(
            subject=None,
            not_valid_before=None,
            not_valid_after=None,
            findings=(
                CertificateFinding(
                    check="parse",
                    severity=CertificateSeverity.WARNING,
                    message=f"Certificate could not be parsed: {exc}",
                ),
            ),
        )

    findings = [
        CertificateFinding(
            check="parse",
            severity=CertificateSeverity.OK,
            message=f"Loaded certificate (serial {cert.serial_number})",
        )
    ]
    not_before = cert.not_valid_before_utc
    not_after = cert.not_valid_after_utc
    if not_after <= now:
        findings.append(
            CertificateFinding(
                check="expiry",
                severity=CertificateSeverity.WARNING,
                message=f"Certificate expired on {not_after.isoformat()}",
            )
        )
    elif (not_after - now).days <= warn_expiry_days:
        days_remaining = (not_after - now).days
        findings.append(
            CertificateFinding(
                check="expiry",
                severity=CertificateSeverity.WARNING,
                message=(
                    "Certificate expires soon "
                    f"({not_after.isoformat()}, {days_remaining} day(s) remaining)"
                ),
            )
        )
    else:
        findings.append(
            CertificateFinding(
                check="expiry",
                severity=CertificateSeverity.OK,
                message=f"Certificate valid until {not_after.isoformat()}",
            )
        )

    return CertificateReport(
        subject=cert.subject.rfc4514_string(),
        not_valid_before=not_before,
        not_valid_after=not_after,
        findings=tuple(findings),
    )


def write_certificate(path: Path, content: str) -> None:
    """Atomically write *content* to *path* readable by the owner only."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp_name, CERT_MODE)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


__all__ = [
    "CERT_FILENAME",
    "CertificateFinding",
    "CertificateReport",
    "CertificateSeverity",
    "PEM_BEGIN",
    "PEM_END",
    "inspect_certificate",
    "read_certificate_file",
    "validate_certificate_text",
    "write_certificate",
]
