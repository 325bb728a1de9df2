# Copyright: (c) 2020, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import datetime
import hashlib

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

import authctx.channel_bindings as cb

TEST_DATA = cb.ChannelBindings(
    cb.AddressType.inet, b"\x01\x02\x03\x04", cb.AddressType.unspecified, b"\x05\x06\x07\x08", b"caf\xC3\xA9"
)

TEST_B_DATA = (
    b"\x02\x00\x00\x00\x04\x00\x00\x00\x01\x02\x03\x04"
    b"\x00\x00\x00\x00\x04\x00\x00\x00\x05\x06\x07\x08"
    b"\x05\x00\x00\x00caf\xC3\xA9"
)

TEST_SEC_DATA = (
    b"\x02\x00\x00\x00\x04\x00\x00\x00\x20\x00\x00\x00"
    b"\x00\x00\x00\x00\x04\x00\x00\x00\x24\x00\x00\x00"
    b"\x05\x00\x00\x00\x28\x00\x00\x00"
    b"\x01\x02\x03\x04\x05\x06\x07\x08caf\xC3\xA9"
)


def generate_certificate(hash_algorithm: hashes.HashAlgorithm) -> bytes:
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "authctx-test")])
    now = datetime.datetime.now(datetime.timezone.utc)

    cert = x509.CertificateBuilder() \
        .subject_name(name) \
        .issuer_name(name) \
        .public_key(key.public_key()) \
        .serial_number(x509.random_serial_number()) \
        .not_valid_before(now) \
        .not_valid_after(now + datetime.timedelta(days=1)) \
        .sign(key, hash_algorithm)

    return cert.public_bytes(serialization.Encoding.DER)


def test_channel_bindings_pack():
    actual = TEST_DATA.pack()

    assert actual == TEST_B_DATA


def test_channel_bindings_none_pack():
    actual = cb.ChannelBindings().pack()

    assert actual == b"\x00\x00\x00\x00\x00\x00\x00\x00" b"\x00\x00\x00\x00\x00\x00\x00\x00" b"\x00\x00\x00\x00"


def test_channel_bindings_to_sec_channel_bindings():
    actual = TEST_DATA.to_sec_channel_bindings()

    assert actual == TEST_SEC_DATA


def test_channel_bindings_none_to_sec_channel_bindings():
    actual = cb.ChannelBindings().to_sec_channel_bindings()

    assert actual == b"\x00\x00\x00\x00\x00\x00\x00\x00\x20\x00\x00\x00" \
                     b"\x00\x00\x00\x00\x00\x00\x00\x00\x20\x00\x00\x00" \
                     b"\x00\x00\x00\x00\x20\x00\x00\x00"


def test_channel_bindings_unpack():
    actual = cb.ChannelBindings.unpack(TEST_B_DATA)

    assert isinstance(actual, cb.ChannelBindings)

    assert actual.initiator_addrtype == cb.AddressType.inet
    assert actual.initiator_address == b"\x01\x02\x03\x04"
    assert actual.acceptor_addrtype == cb.AddressType.unspecified
    assert actual.acceptor_address == b"\x05\x06\x07\x08"
    assert actual.application_data == b"caf\xC3\xA9"


def test_channel_bindings_str():
    actual = str(TEST_DATA)

    assert (
        actual == r"ChannelBindings initiator_addr(AddressType.inet|b'\x01\x02\x03\x04') | "
        r"acceptor_addr(AddressType.unspecified|b'\x05\x06\x07\x08') | "
        r"application_data(b'caf\xc3\xa9')"
    )


def test_channel_bindings_repr():
    actual = repr(TEST_DATA)

    assert (
        actual == r"authctx.channel_bindings.ChannelBindings(initiator_addrtype=<AddressType.inet: 2>, "
        r"initiator_address=b'\x01\x02\x03\x04', "
        r"acceptor_addrtype=<AddressType.unspecified: 0>, "
        r"acceptor_address=b'\x05\x06\x07\x08', "
        r"application_data=b'caf\xc3\xa9')"
    )


def test_channel_bindings_eq():
    assert TEST_DATA == cb.ChannelBindings.unpack(TEST_B_DATA)
    assert TEST_DATA == TEST_B_DATA

    other = cb.ChannelBindings.unpack(TEST_B_DATA)
    assert TEST_DATA == other

    assert TEST_DATA != 1

    other.acceptor_address = b"new"
    assert TEST_DATA != other


@pytest.mark.parametrize("hash_algorithm, expected", [
    (hashes.SHA256(), hashlib.sha256),
    (hashes.SHA384(), hashlib.sha384),
    (hashes.SHA512(), hashlib.sha512),
])
def test_tls_server_end_point_hash(hash_algorithm, expected):
    cert = generate_certificate(hash_algorithm)
    actual = cb.get_tls_server_end_point_hash(cert)

    assert actual == expected(cert).digest()


def test_channel_bindings_from_tls_certificate():
    cert = generate_certificate(hashes.SHA256())
    actual = cb.ChannelBindings.from_tls_certificate(cert)

    assert actual.initiator_addrtype == cb.AddressType.unspecified
    assert actual.initiator_address is None
    assert actual.application_data == b"tls-server-end-point:" + hashlib.sha256(cert).digest()
