"""Client key material and certificate handling for broker TLS."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

LOGGER = logging.getLogger(__name__)

KEY_SIZE = 2048
CSR_COMMON_NAME = "AWS IoT Certificate"
CSR_ORGANIZATION = "Amazon"


def generate_key_pair() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)


def create_csr(private_key: rsa.RSAPrivateKey) -> str:
    """Create a PEM encoded certificate signing request for ``private_key``."""

    builder = x509.CertificateSigningRequestBuilder().subject_name(
        x509.Name(
            [
                x509.NameAttribute(NameOID.COMMON_NAME, CSR_COMMON_NAME),
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, CSR_ORGANIZATION),
            ]
        )
    )
    csr = builder.sign(private_key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.PEM).decode("ascii")


def strip_pem_armour(pem: str) -> str:
    """Return the base64 body of a PEM block without BEGIN/END lines."""

    lines = [
        line.strip()
        for line in pem.strip().splitlines()
        if line.strip() and not line.startswith("-----")
    ]
    return "".join(lines)


@dataclass(slots=True)
class IssuedCertificate:
    """A broker client certificate bound to its private key and topic grants."""

    certificate_pem: str
    private_key_pem: str
    topics: Tuple[str, ...] = ()
    _directory: Optional[Path] = field(default=None, repr=False)

    @classmethod
    def bind(
        cls,
        certificate_pem: str,
        private_key: rsa.RSAPrivateKey,
        topics: Sequence[str],
    ) -> "IssuedCertificate":
        # Raises ValueError for anything that is not a PEM certificate.
        x509.load_pem_x509_certificate(certificate_pem.encode("ascii"))
        key_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii")
        return cls(
            certificate_pem=certificate_pem,
            private_key_pem=key_pem,
            topics=tuple(topics),
        )

    @property
    def certfile(self) -> Optional[Path]:
        return self._directory / "client.pem" if self._directory else None

    @property
    def keyfile(self) -> Optional[Path]:
        return self._directory / "client.key" if self._directory else None

    def materialize(self) -> Tuple[Path, Path]:
        """Write certificate and key to a private directory for ``ssl``."""

        if self._directory is None:
            self._directory = Path(tempfile.mkdtemp(prefix="thinq-mqtt-"))
            certfile, keyfile = self.certfile, self.keyfile
            assert certfile is not None and keyfile is not None
            certfile.write_text(self.certificate_pem, encoding="ascii")
            keyfile.write_text(self.private_key_pem, encoding="ascii")
            os.chmod(keyfile, 0o600)
            LOGGER.debug("Client certificate written to %s", self._directory)

        assert self.certfile is not None and self.keyfile is not None
        return self.certfile, self.keyfile

    def release(self) -> None:
        directory, self._directory = self._directory, None
        if directory is not None:
            shutil.rmtree(directory, ignore_errors=True)
            LOGGER.debug("Client certificate removed from %s", directory)
