import stat

import pytest
from cryptography import x509
from cryptography.x509.oid import NameOID

from thinq_mqtt.certificates import (
    IssuedCertificate,
    create_csr,
    generate_key_pair,
    strip_pem_armour,
)


def test_create_csr_is_signed_by_key():
    key = generate_key_pair()

    csr_pem = create_csr(key)
    csr = x509.load_pem_x509_csr(csr_pem.encode("ascii"))

    assert csr.is_signature_valid
    assert csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == (
        "AWS IoT Certificate"
    )
    assert csr.public_key().public_numbers() == key.public_key().public_numbers()


def test_strip_pem_armour_keeps_only_body():
    pem = "-----BEGIN CERTIFICATE REQUEST-----\nAAAA\nBBBB\n-----END CERTIFICATE REQUEST-----\n"

    assert strip_pem_armour(pem) == "AAAABBBB"


def test_bind_materialize_and_release(certificate_pem):
    key = generate_key_pair()
    issued = IssuedCertificate.bind(certificate_pem, key, ["topic/a", "topic/b"])

    assert issued.topics == ("topic/a", "topic/b")
    assert issued.certfile is None

    certfile, keyfile = issued.materialize()

    assert certfile.read_text(encoding="ascii") == certificate_pem
    assert "PRIVATE KEY" in keyfile.read_text(encoding="ascii")
    assert stat.S_IMODE(keyfile.stat().st_mode) == 0o600
    assert issued.materialize() == (certfile, keyfile)

    issued.release()
    issued.release()

    assert not certfile.exists()
    assert issued.certfile is None


def test_bind_rejects_invalid_certificate():
    with pytest.raises(ValueError):
        IssuedCertificate.bind("garbage", generate_key_pair(), [])
