# Copyright: (c) 2020, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import enum
import struct
import typing

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes


def _pack_value(addr_type: typing.Optional["AddressType"], b: typing.Optional[bytes]) -> bytes:
    """Packs an type/data entry into the byte structure required."""
    if not b:
        b = b""

    return (struct.pack("<I", addr_type) if addr_type is not None else b"") + struct.pack("<I", len(b)) + b


def _unpack_value(b_mem: memoryview, offset: int) -> typing.Tuple[bytes, int]:
    """Unpacks a raw C struct value to a byte string."""
    length = struct.unpack("<I", b_mem[offset:offset + 4].tobytes())[0]
    new_offset = offset + length + 4

    data = b""
    if length:
        data = b_mem[offset + 4:offset + 4 + length].tobytes()

    return data, new_offset


class AddressType(enum.IntEnum):
    """Known address types for channel bindings.

    The address type values a channel binding address can be, mostly
    unspecified for application level bindings like TLS.
    """

    unspecified = 0  # GSS_C_AF_UNSPEC
    local = 1  # GSS_C_AF_LOCAL
    inet = 2  # GSS_C_AF_INET
    implink = 3  # GSS_C_AF_IMPLINK
    pup = 4  # GSS_C_AF_PUP
    chaos = 5  # GSS_C_AF_CHAOS
    ns = 6  # GSS_C_AF_NS
    nbs = 7  # GSS_C_AF_NBS
    ecma = 8  # GSS_C_AF_ECMA
    datakit = 9  # GSS_C_AF_DATAKIT
    ccitt = 10  # GSS_C_AF_CCITT
    sna = 11  # GSS_C_AF_SNA
    decnet = 12  # GSS_C_AF_DECnet
    dli = 13  # GSS_C_AF_DLI
    lat = 14  # GSS_C_AF_LAT
    hylink = 15  # GSS_C_AF_HYLINK
    appletalk = 16  # GSS_C_AF_APPLETALK
    bsc = 17  # GSS_C_AF_BSC
    dss = 18  # GSS_C_AF_DSS
    osi = 19  # GSS_C_AF_OSI
    x25 = 21  # GSS_C_AF_X25
    inet6 = 24  # GSS_C_AF_INET6
    nulladdr = 255  # GSS_C_AF_NULLADDR


class ChannelBindings:
    """Channel binding token bound to a security context.

    Channel bindings are tags that identify the particular data channel the
    context is negotiated over. Because these tags are specific to the
    originator and recipient applications, they offer more proof of a valid
    identity. Most TLS based transports just set the application data to
    `tls-server-end-point:<certificate hash>`, see :meth:`from_tls_certificate`.

    Args:
        initiator_addrtype: The address type of the initiator address.
        initiator_address: The initiator's address.
        acceptor_addrtype: The address type of the acceptor address.
        acceptor_address: The acceptor's address.
        application_data: Any extra application data to set on the bindings struct.
    """

    def __init__(
        self,
        initiator_addrtype: AddressType = AddressType.unspecified,
        initiator_address: typing.Optional[bytes] = None,
        acceptor_addrtype: AddressType = AddressType.unspecified,
        acceptor_address: typing.Optional[bytes] = None,
        application_data: typing.Optional[bytes] = None,
    ) -> None:
        self.initiator_addrtype = AddressType(initiator_addrtype)
        self.initiator_address = initiator_address
        self.acceptor_addrtype = AddressType(acceptor_addrtype)
        self.acceptor_address = acceptor_address
        self.application_data = application_data

    def __repr__(self) -> str:
        return "{0}.{1}(initiator_addrtype={2!r}, initiator_address={3!r}, acceptor_addrtype={4!r}, " \
               "acceptor_address={5!r}, application_data={6!r})".format(
                   type(self).__module__, type(self).__name__, self.initiator_addrtype, self.initiator_address,
                   self.acceptor_addrtype, self.acceptor_address, self.application_data)

    def __str__(self) -> str:
        return "{0} initiator_addr({1}.{2}|{3!r}) | acceptor_addr({4}.{5}|{6!r}) | application_data({7!r})".format(
            type(self).__name__, type(self.initiator_addrtype).__name__, self.initiator_addrtype.name,
            self.initiator_address, type(self.acceptor_addrtype).__name__, self.acceptor_addrtype.name,
            self.acceptor_address, self.application_data)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, (bytes, ChannelBindings)):
            return False

        if isinstance(other, ChannelBindings):
            other = other.pack()

        return self.pack() == other

    @classmethod
    def from_tls_certificate(cls, certificate_der: bytes) -> "ChannelBindings":
        """Creates the tls-server-end-point bindings for a TLS server certificate.

        Args:
            certificate_der: The X509 DER encoded certificate of the TLS server.

        Returns:
            ChannelBindings: The bindings with the `tls-server-end-point` application data.
        """
        cert_hash = get_tls_server_end_point_hash(certificate_der)
        return cls(application_data=b"tls-server-end-point:" + cert_hash)

    def pack(self) -> bytes:
        """Packs the structure to the gss_channel_bindings_struct byte form."""
        return b"".join([
            _pack_value(self.initiator_addrtype, self.initiator_address),
            _pack_value(self.acceptor_addrtype, self.acceptor_address),
            _pack_value(None, self.application_data),
        ])

    def to_sec_channel_bindings(self) -> bytes:
        """Packs the structure to the SEC_CHANNEL_BINDINGS byte form.

        This is the form a provider expects in a channel bindings security
        buffer. It is a 32 byte header of address types, lengths and offsets
        followed by the address and application data.
        """
        b_bindings = bytearray()
        b_bindings_data = bytearray()

        for addr_type, b_data in [
            (self.initiator_addrtype, self.initiator_address),
            (self.acceptor_addrtype, self.acceptor_address),
            (None, self.application_data),
        ]:
            b_data = b_data or b""

            if addr_type is not None:
                b_bindings += struct.pack("<I", addr_type)

            b_bindings += struct.pack("<I", len(b_data))
            b_bindings += struct.pack("<I", 32 + len(b_bindings_data))
            b_bindings_data += b_data

        return bytes(b_bindings + b_bindings_data)

    @staticmethod
    def unpack(b_data: bytes) -> "ChannelBindings":
        """Unpacks the gss_channel_bindings_struct byte form."""
        b_mem = memoryview(b_data)

        initiator_addrtype = struct.unpack("<I", b_mem[:4].tobytes())[0]
        initiator_address, offset = _unpack_value(b_mem, 4)

        acceptor_addrtype = struct.unpack("<I", b_mem[offset:offset + 4].tobytes())[0]
        acceptor_address, offset = _unpack_value(b_mem, offset + 4)

        application_data = _unpack_value(b_mem, offset)[0]

        return ChannelBindings(initiator_addrtype=initiator_addrtype, initiator_address=initiator_address,
                               acceptor_addrtype=acceptor_addrtype, acceptor_address=acceptor_address,
                               application_data=application_data)


def get_tls_server_end_point_hash(certificate_der: bytes) -> bytes:
    """Get the tls-server-end-point channel binding hash.

    The hash algorithm is the one used in the certificate signature unless it
    is unknown, MD5, or SHA1 in which case SHA256 is used as per RFC 5929.

    Args:
        certificate_der: The X509 DER encoded certificate.

    Returns:
        bytes: The hash value to use for the channel binding token.
    """
    cert = x509.load_der_x509_certificate(certificate_der)
    try:
        hash_algorithm = cert.signature_hash_algorithm
    except UnsupportedAlgorithm:
        hash_algorithm = None

    if not hash_algorithm or hash_algorithm.name in ["md5", "sha1"]:
        digest = hashes.Hash(hashes.SHA256())
    else:
        digest = hashes.Hash(hash_algorithm)

    digest.update(certificate_der)
    return digest.finalize()
