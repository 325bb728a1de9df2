# Copyright: (c) 2020, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import datetime
import enum
import hashlib
import itertools
import logging
import os
import struct
import typing

from cryptography.hazmat.primitives import constant_time, hashes, hmac
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from authctx.buffers import BufferSet, SecurityBuffer, SecurityBufferType
from authctx.exceptions import SecurityStatusError
from authctx.provider import (
    AuthenticationPackage,
    ContextHandle,
    CredentialHandle,
    DataRepresentation,
    InitializeContextReqFlags,
    InitializeContextResult,
    InitializeContextRetFlags,
    LastTokenStatus,
    PackageCapabilities,
    SecStatus,
    SecurityProvider,
)

log = logging.getLogger(__name__)

PACKAGE_NAME = "Loopback"

_DEFAULT_LIFETIME = 36000
_MAGIC = b"LBAC"
_VERSION = 1
_NONCE_SIZE = 16
_PROOF_SIZE = 32
_CHECKSUM_SIZE = 16

# version (2) + sender (2) + checksum (16) + sequence number (4)
SIGNATURE_SIZE = 4 + _CHECKSUM_SIZE + 4

_SENDER_INITIATOR = 0
_SENDER_ACCEPTOR = 1

_SUPPORTED_FLAGS = InitializeContextReqFlags.mutual_auth | InitializeContextReqFlags.replay_detect | \
    InitializeContextReqFlags.sequence_detect | InitializeContextReqFlags.confidentiality | \
    InitializeContextReqFlags.integrity | InitializeContextReqFlags.connection


def _get_lifetime() -> int:
    """Get the lifetime in seconds of a loopback context.

    The value can be overridden with the env var `AUTHCTX_LOOPBACK_LIFETIME`.
    """
    lifetime = os.environ.get("AUTHCTX_LOOPBACK_LIFETIME", None)
    if not lifetime:
        return _DEFAULT_LIFETIME

    try:
        return int(lifetime)
    except ValueError:
        log.warning("Invalid AUTHCTX_LOOPBACK_LIFETIME value %r, using default of %d", lifetime, _DEFAULT_LIFETIME)
        return _DEFAULT_LIFETIME


def _derive(key: bytes, salt: bytes, info: bytes) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=32, salt=salt, info=info).derive(key)


def _hmac_sha256(key: bytes, *data: bytes) -> bytes:
    h = hmac.HMAC(key, hashes.SHA256())
    for d in data:
        h.update(d)
    return h.finalize()


def _sender(context: "_LoopbackContext") -> int:
    return _SENDER_INITIATOR if context.initiator else _SENDER_ACCEPTOR


def _pack_text(value: typing.Optional[str]) -> bytes:
    b_value = (value or "").encode("utf-8")
    return struct.pack("<H", len(b_value)) + b_value


def _unpack_text(b_mem: memoryview, offset: int) -> typing.Tuple[typing.Optional[str], int]:
    if len(b_mem) < offset + 2:
        raise ValueError("Text field length extends past the end of the message")

    length = struct.unpack("<H", b_mem[offset:offset + 2].tobytes())[0]
    end = offset + 2 + length
    if len(b_mem) < end:
        raise ValueError("Text field extends past the end of the message")

    return b_mem[offset + 2:end].tobytes().decode("utf-8") or None, end


class MessageType(enum.IntEnum):
    negotiate = 1
    challenge = 2
    authenticate = 3


class Negotiate:
    """The first message sent by the initiator.

    Args:
        flags: The requested context flags.
        client_nonce: Random nonce of the initiator.
        bindings_hash: SHA256 of the channel bindings or zeros if there are none.
        principal: The principal of the initiator credential.
        target: The target principal name.
    """

    MESSAGE_TYPE = MessageType.negotiate

    def __init__(
        self,
        flags: int,
        client_nonce: bytes,
        bindings_hash: bytes,
        principal: typing.Optional[str] = None,
        target: typing.Optional[str] = None,
    ) -> None:
        self.flags = flags
        self.client_nonce = client_nonce
        self.bindings_hash = bindings_hash
        self.principal = principal
        self.target = target

    def pack(self) -> bytes:
        return _pack_header(self.MESSAGE_TYPE) + struct.pack("<I", self.flags) + self.client_nonce + \
            self.bindings_hash + _pack_text(self.principal) + _pack_text(self.target)

    @staticmethod
    def unpack(b_data: bytes) -> "Negotiate":
        b_mem = _unpack_header(b_data, MessageType.negotiate, 4 + _NONCE_SIZE + 32 + 4)
        flags = struct.unpack("<I", b_mem[:4].tobytes())[0]
        client_nonce = b_mem[4:4 + _NONCE_SIZE].tobytes()
        bindings_hash = b_mem[4 + _NONCE_SIZE:4 + _NONCE_SIZE + 32].tobytes()
        principal, offset = _unpack_text(b_mem, 4 + _NONCE_SIZE + 32)
        target = _unpack_text(b_mem, offset)[0]

        return Negotiate(flags, client_nonce, bindings_hash, principal=principal, target=target)


class Challenge:
    """The acceptor reply to a Negotiate message, proves the acceptor knows the secret."""

    MESSAGE_TYPE = MessageType.challenge

    def __init__(self, flags: int, server_nonce: bytes, proof: bytes) -> None:
        self.flags = flags
        self.server_nonce = server_nonce
        self.proof = proof

    def pack(self) -> bytes:
        return _pack_header(self.MESSAGE_TYPE) + struct.pack("<I", self.flags) + self.server_nonce + self.proof

    @staticmethod
    def unpack(b_data: bytes) -> "Challenge":
        b_mem = _unpack_header(b_data, MessageType.challenge, 4 + _NONCE_SIZE + _PROOF_SIZE)
        flags = struct.unpack("<I", b_mem[:4].tobytes())[0]
        server_nonce = b_mem[4:4 + _NONCE_SIZE].tobytes()
        proof = b_mem[4 + _NONCE_SIZE:4 + _NONCE_SIZE + _PROOF_SIZE].tobytes()

        return Challenge(flags, server_nonce, proof)


class Authenticate:
    """The final initiator message, proves the initiator knows the secret."""

    MESSAGE_TYPE = MessageType.authenticate

    def __init__(self, proof: bytes) -> None:
        self.proof = proof

    def pack(self) -> bytes:
        return _pack_header(self.MESSAGE_TYPE) + self.proof

    @staticmethod
    def unpack(b_data: bytes) -> "Authenticate":
        b_mem = _unpack_header(b_data, MessageType.authenticate, _PROOF_SIZE)
        return Authenticate(b_mem[:_PROOF_SIZE].tobytes())


def _pack_header(message_type: MessageType) -> bytes:
    return _MAGIC + struct.pack("<BB", _VERSION, message_type)


def _unpack_header(b_data: bytes, message_type: MessageType, min_length: int) -> memoryview:
    b_mem = memoryview(b_data)
    if len(b_mem) < 6 + min_length or b_mem[:4].tobytes() != _MAGIC:
        raise ValueError("Input data is not a loopback %s message" % message_type.name)

    version, actual_type = struct.unpack("<BB", b_mem[4:6].tobytes())
    if version != _VERSION:
        raise ValueError("Unsupported loopback message version %d" % version)

    if actual_type != message_type:
        raise ValueError("Expecting loopback %s message but got type %d" % (message_type.name, actual_type))

    return b_mem[6:]


class _LoopbackCredential:

    def __init__(self, principal: typing.Optional[str], secret: bytes) -> None:
        self.principal = principal
        self.secret = secret


class _LoopbackContext:
    """The provider side state of a context in the handle table."""

    def __init__(self, credential: _LoopbackCredential, initiator: bool) -> None:
        self.credential = credential
        self.initiator = initiator
        self.flags = InitializeContextRetFlags.none
        self.expiry: typing.Optional[datetime.datetime] = None
        self.negotiate: typing.Optional[bytes] = None
        self.challenge: typing.Optional[bytes] = None
        self.session_key: typing.Optional[bytes] = None
        self.sign_key: typing.Optional[bytes] = None
        self.seal_key: typing.Optional[bytes] = None
        self.complete = False
        self.needs_complete = False

    def establish(self, client_nonce: bytes, server_nonce: bytes, lifetime: int) -> None:
        self.session_key = _derive(self.credential.secret, client_nonce + server_nonce, b"authctx session key")
        self.sign_key = _derive(self.session_key, b"", b"authctx signing key")
        self.seal_key = _derive(self.session_key, b"", b"authctx sealing key")
        self.expiry = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(seconds=lifetime)

    def clear(self) -> None:
        self.session_key = self.sign_key = self.seal_key = None
        self.negotiate = self.challenge = None
        self.complete = False


class LoopbackProvider(SecurityProvider):
    """An in process security provider.

    The loopback provider authenticates two parties that share a secret. Both
    the initiator and acceptor contexts live in the same handle table so a
    complete exchange can run in process, the initiator through
    :meth:`initialize_context` and the acceptor through
    :meth:`accept_context`.

    The exchange is::

        initiator -> Negotiate(flags, client nonce, bindings hash, principal, target)
        acceptor  -> Challenge(flags, server nonce, acceptor proof)
        initiator -> Authenticate(initiator proof)

    The proofs are a HMAC-SHA256 of the messages exchanged keyed with the
    shared secret. The session key is derived from the secret and both nonces
    with HKDF. Signatures are a truncated HMAC-SHA256 over the sequence number
    and data buffers, encryption uses AES-256-CTR.

    Args:
        lifetime: The lifetime in seconds of an established context, defaults to `AUTHCTX_LOOPBACK_LIFETIME`.
        require_complete: The final initiator step returns `SEC_I_COMPLETE_NEEDED` and the token must be completed
            with :meth:`complete_token` before it is usable.
        package_name: The package name reported for the contexts.
    """

    def __init__(
        self,
        lifetime: typing.Optional[int] = None,
        require_complete: bool = False,
        package_name: str = PACKAGE_NAME,
    ) -> None:
        self.lifetime = lifetime if lifetime is not None else _get_lifetime()
        self.require_complete = require_complete
        self.package_name = package_name

        self._contexts: typing.Dict[int, _LoopbackContext] = {}
        self._handle_counter = itertools.count(1)

    def __len__(self) -> int:
        return len(self._contexts)

    def acquire_credentials(self, principal: typing.Optional[str], secret: typing.Union[str, bytes]) -> CredentialHandle:
        """Acquire a credential for the principal.

        Args:
            principal: The name of the principal, for an acceptor this is the target name initiators must use.
            secret: The secret shared between the initiator and acceptor.

        Returns:
            CredentialHandle: The credential to use for a context.
        """
        if isinstance(secret, str):
            secret = secret.encode("utf-8")

        return CredentialHandle(self.package_name, _LoopbackCredential(principal, secret), principal=principal)

    def initialize_context(
        self,
        credential: CredentialHandle,
        handle: typing.Optional[ContextHandle],
        target_name: typing.Optional[str],
        context_req: InitializeContextReqFlags,
        data_rep: DataRepresentation,
        input_buffers: typing.Optional[BufferSet],
        output_buffers: BufferSet,
    ) -> InitializeContextResult:
        in_buffers = input_buffers if input_buffers is not None else BufferSet()
        in_token = in_buffers.first(SecurityBufferType.token)

        if handle is None:
            cred = self._get_credential(credential)
            if cred is None:
                return InitializeContextResult(SecStatus.SEC_E_UNKNOWN_CREDENTIALS, InitializeContextRetFlags.none,
                                               None, None)

            context = _LoopbackContext(cred, True)
            handle = self._add_context(context)
            context.flags = InitializeContextRetFlags(int(context_req & _SUPPORTED_FLAGS))

            bindings = in_buffers.first(SecurityBufferType.channel_bindings)
            bindings_hash = hashlib.sha256(bytes(bindings.data)).digest() if bindings is not None else b"\x00" * 32

            negotiate = Negotiate(int(context.flags), os.urandom(_NONCE_SIZE), bindings_hash,
                                  principal=context.credential.principal, target=target_name).pack()
            context.negotiate = negotiate

            return self._write_token(context, handle, output_buffers, negotiate, SecStatus.SEC_I_CONTINUE_NEEDED)

        context = self._contexts.get(handle.value, None)
        if context is None or not context.initiator:
            return InitializeContextResult(SecStatus.SEC_E_INVALID_HANDLE, InitializeContextRetFlags.none, None, None)

        if context.challenge is not None or context.negotiate is None:
            return InitializeContextResult(SecStatus.SEC_E_OUT_OF_SEQUENCE, context.flags, context.expiry, handle)

        if in_token is None:
            return InitializeContextResult(SecStatus.SEC_E_INVALID_TOKEN, context.flags, context.expiry, handle)

        try:
            challenge = Challenge.unpack(bytes(in_token.data))
        except ValueError as e:
            log.debug("Failed to unpack loopback challenge: %s", e)
            return InitializeContextResult(SecStatus.SEC_E_INVALID_TOKEN, context.flags, context.expiry, handle)

        expected_proof = _hmac_sha256(context.credential.secret, b"acceptor", context.negotiate,
                                      struct.pack("<I", challenge.flags), challenge.server_nonce)
        if not constant_time.bytes_eq(expected_proof, challenge.proof):
            log.debug("Loopback acceptor proof did not match the shared secret")
            return InitializeContextResult(SecStatus.SEC_E_LOGON_DENIED, context.flags, context.expiry, handle)

        context.challenge = bytes(in_token.data)
        context.flags = InitializeContextRetFlags(challenge.flags)
        context.establish(Negotiate.unpack(context.negotiate).client_nonce, challenge.server_nonce, self.lifetime)

        authenticate = Authenticate(_hmac_sha256(context.credential.secret, b"initiator", context.negotiate,
                                                 context.challenge)).pack()

        if self.require_complete:
            context.needs_complete = True
            status = SecStatus.SEC_I_COMPLETE_NEEDED
        else:
            context.complete = True
            status = SecStatus.SEC_E_OK

        return self._write_token(context, handle, output_buffers, authenticate, status)

    def accept_context(
        self,
        credential: CredentialHandle,
        handle: typing.Optional[ContextHandle],
        in_token: bytes,
        channel_bindings: typing.Optional[bytes] = None,
    ) -> typing.Tuple[int, typing.Optional[ContextHandle], bytes]:
        """Performs an acceptor step of the exchange.

        This simulates the peer of an initiator context. Unlike
        :meth:`initialize_context` this returns the output token directly.

        Args:
            credential: The acceptor credential, the principal is the target name initiators must use.
            handle: The acceptor context handle, None for the first step.
            in_token: The initiator token.
            channel_bindings: The SEC_CHANNEL_BINDINGS bytes the initiator must have used.

        Returns:
            Tuple[int, Optional[ContextHandle], bytes]: The status, acceptor handle, and output token.
        """
        if handle is None:
            cred = self._get_credential(credential)
            if cred is None:
                return SecStatus.SEC_E_UNKNOWN_CREDENTIALS, None, b""

            context = _LoopbackContext(cred, False)

            try:
                negotiate = Negotiate.unpack(in_token)
            except ValueError as e:
                log.debug("Failed to unpack loopback negotiate: %s", e)
                return SecStatus.SEC_E_INVALID_TOKEN, None, b""

            if channel_bindings is not None and \
                    negotiate.bindings_hash != hashlib.sha256(channel_bindings).digest():
                return SecStatus.SEC_E_BAD_BINDINGS, None, b""

            principal = context.credential.principal
            if negotiate.target and principal and negotiate.target.lower() != principal.lower():
                return SecStatus.SEC_E_WRONG_PRINCIPAL, None, b""

            handle = self._add_context(context)
            flags = negotiate.flags & int(_SUPPORTED_FLAGS)
            server_nonce = os.urandom(_NONCE_SIZE)
            proof = _hmac_sha256(context.credential.secret, b"acceptor", in_token, struct.pack("<I", flags),
                                 server_nonce)
            challenge = Challenge(flags, server_nonce, proof).pack()

            context.flags = InitializeContextRetFlags(flags)
            context.negotiate = in_token
            context.challenge = challenge
            context.establish(negotiate.client_nonce, server_nonce, self.lifetime)

            return SecStatus.SEC_I_CONTINUE_NEEDED, handle, challenge

        context = self._contexts.get(handle.value, None)
        if context is None or context.initiator:
            return SecStatus.SEC_E_INVALID_HANDLE, handle, b""

        if context.complete or context.negotiate is None or context.challenge is None:
            return SecStatus.SEC_E_OUT_OF_SEQUENCE, handle, b""

        try:
            authenticate = Authenticate.unpack(in_token)
        except ValueError as e:
            log.debug("Failed to unpack loopback authenticate: %s", e)
            return SecStatus.SEC_E_INVALID_TOKEN, handle, b""

        expected_proof = _hmac_sha256(context.credential.secret, b"initiator", context.negotiate, context.challenge)
        if not constant_time.bytes_eq(expected_proof, authenticate.proof):
            return SecStatus.SEC_E_LOGON_DENIED, handle, b""

        context.complete = True
        return SecStatus.SEC_E_OK, handle, b""

    def complete_token(self, handle: ContextHandle, buffers: BufferSet) -> int:
        context = self._contexts.get(handle.value, None)
        if context is None:
            return SecStatus.SEC_E_INVALID_HANDLE

        if not context.needs_complete:
            return SecStatus.SEC_E_OUT_OF_SEQUENCE

        context.needs_complete = False
        context.complete = True
        return SecStatus.SEC_E_OK

    def delete_context(self, handle: ContextHandle) -> None:
        context = self._contexts.pop(handle.value, None)
        if context is not None:
            log.debug("Deleting loopback context %d", handle.value)
            context.clear()

    def query_session_key(self, handle: ContextHandle) -> bytes:
        context = self._get_context(handle)
        if context.session_key is None:
            raise SecurityStatusError(SecStatus.SEC_E_UNSUPPORTED_FUNCTION,
                                      "The session key is not available until the context is established")

        return context.session_key

    def query_max_signature_size(self, handle: ContextHandle) -> int:
        self._get_context(handle)
        return SIGNATURE_SIZE

    def query_security_trailer_size(self, handle: ContextHandle) -> int:
        self._get_context(handle)
        return SIGNATURE_SIZE

    def query_last_token_status(self, handle: ContextHandle) -> LastTokenStatus:
        context = self._get_context(handle)
        return LastTokenStatus.yes if context.complete or context.needs_complete else LastTokenStatus.no

    def query_package_name(self, handle: ContextHandle) -> typing.Optional[str]:
        self._get_context(handle)
        return self.package_name

    def query_package_info(self, handle: ContextHandle) -> AuthenticationPackage:
        self._get_context(handle)
        capabilities = PackageCapabilities.integrity | PackageCapabilities.privacy | \
            PackageCapabilities.connection | PackageCapabilities.mutual_auth | \
            PackageCapabilities.readonly_with_checksum

        return AuthenticationPackage(
            name=self.package_name,
            comment="Loopback shared secret authentication",
            capabilities=capabilities,
            version=_VERSION,
            rpc_id=0xFFFF,
            max_token_size=1024,
        )

    def make_signature(self, handle: ContextHandle, qop: int, buffers: BufferSet, sequence_no: int) -> int:
        context, status = self._get_established(handle, qop)
        if context is None:
            return status

        token = buffers.first(SecurityBufferType.token)
        if token is None:
            return SecStatus.SEC_E_INVALID_TOKEN

        if len(token.data) < SIGNATURE_SIZE:
            return SecStatus.SEC_E_BUFFER_TOO_SMALL

        token.data[:] = self._signature(context, buffers, sequence_no)
        return SecStatus.SEC_E_OK

    def verify_signature(self, handle: ContextHandle, buffers: BufferSet, sequence_no: int) -> int:
        context, status = self._get_established(handle, 0)
        if context is None:
            return status

        return self._verify(context, buffers, sequence_no)

    def encrypt_message(self, handle: ContextHandle, qop: int, buffers: BufferSet, sequence_no: int) -> int:
        context, status = self._get_established(handle, qop)
        if context is None:
            return status

        token = buffers.first(SecurityBufferType.token)
        if token is None:
            return SecStatus.SEC_E_INVALID_TOKEN

        if len(token.data) < SIGNATURE_SIZE:
            return SecStatus.SEC_E_BUFFER_TOO_SMALL

        self._crypt(context, buffers, _sender(context), sequence_no, encrypt=True)
        token.data[:] = self._signature(context, buffers, sequence_no)
        return SecStatus.SEC_E_OK

    def decrypt_message(self, handle: ContextHandle, buffers: BufferSet, sequence_no: int) -> int:
        context, status = self._get_established(handle, 0)
        if context is None:
            return status

        # The signature covers the ciphertext, nothing is decrypted on a mismatch.
        status = self._verify(context, buffers, sequence_no)
        if status != SecStatus.SEC_E_OK:
            return status

        token = typing.cast(SecurityBuffer, buffers.first(SecurityBufferType.token))
        sender = struct.unpack("<H", bytes(token.data[2:4]))[0]
        self._crypt(context, buffers, sender, sequence_no, encrypt=False)
        return SecStatus.SEC_E_OK

    def _add_context(self, context: _LoopbackContext) -> ContextHandle:
        handle = ContextHandle(next(self._handle_counter))
        self._contexts[handle.value] = context
        log.debug("Created loopback %s context %d", "initiator" if context.initiator else "acceptor", handle.value)

        return handle

    def _get_credential(self, credential: CredentialHandle) -> typing.Optional[_LoopbackCredential]:
        if not isinstance(credential.handle, _LoopbackCredential):
            log.debug("Credential %r was not acquired by a loopback provider", credential)
            return None

        return credential.handle

    def _get_context(self, handle: ContextHandle) -> _LoopbackContext:
        context = self._contexts.get(handle.value, None)
        if context is None:
            raise SecurityStatusError(SecStatus.SEC_E_INVALID_HANDLE, "Unknown loopback context handle %d"
                                      % handle.value)

        return context

    def _get_established(
        self,
        handle: ContextHandle,
        qop: int,
    ) -> typing.Tuple[typing.Optional[_LoopbackContext], int]:
        context = self._contexts.get(handle.value, None)
        if context is None or not context.complete:
            return None, SecStatus.SEC_E_INVALID_HANDLE

        if qop:
            return None, SecStatus.SEC_E_QOP_NOT_SUPPORTED

        if context.expiry is not None and datetime.datetime.now(datetime.timezone.utc) >= context.expiry:
            return None, SecStatus.SEC_E_CONTEXT_EXPIRED

        return context, SecStatus.SEC_E_OK

    def _write_token(
        self,
        context: _LoopbackContext,
        handle: ContextHandle,
        output_buffers: BufferSet,
        token: bytes,
        status: int,
    ) -> InitializeContextResult:
        out_buffer = output_buffers.first(SecurityBufferType.token)
        if out_buffer is None:
            return InitializeContextResult(SecStatus.SEC_E_INVALID_TOKEN, context.flags, context.expiry, handle)

        if len(out_buffer.data) < len(token):
            return InitializeContextResult(SecStatus.SEC_E_BUFFER_TOO_SMALL, context.flags, context.expiry, handle)

        out_buffer.data[:] = token
        return InitializeContextResult(status, context.flags, context.expiry, handle)

    def _checksum(self, context: _LoopbackContext, buffers: BufferSet, sender: int, sequence_no: int) -> bytes:
        data = [bytes(b.data) for b in buffers if b.buffer_type == SecurityBufferType.data]
        return _hmac_sha256(typing.cast(bytes, context.sign_key), struct.pack("<HI", sender, sequence_no),
                            *data)[:_CHECKSUM_SIZE]

    def _signature(self, context: _LoopbackContext, buffers: BufferSet, sequence_no: int) -> bytes:
        sender = _sender(context)
        return struct.pack("<HH", _VERSION, sender) + self._checksum(context, buffers, sender, sequence_no) + \
            struct.pack("<I", sequence_no)

    def _verify(self, context: _LoopbackContext, buffers: BufferSet, sequence_no: int) -> int:
        token = buffers.first(SecurityBufferType.token)
        if token is None or len(token.data) != SIGNATURE_SIZE:
            return SecStatus.SEC_E_INVALID_TOKEN

        signature = bytes(token.data)
        version, sender = struct.unpack("<HH", signature[:4])
        if version != _VERSION or sender not in [_SENDER_INITIATOR, _SENDER_ACCEPTOR]:
            return SecStatus.SEC_E_INVALID_TOKEN

        signed_seq = struct.unpack("<I", signature[-4:])[0]
        if signed_seq != sequence_no:
            return SecStatus.SEC_E_OUT_OF_SEQUENCE

        expected = self._checksum(context, buffers, sender, sequence_no)
        if not constant_time.bytes_eq(expected, signature[4:4 + _CHECKSUM_SIZE]):
            return SecStatus.SEC_E_MESSAGE_ALTERED

        return SecStatus.SEC_E_OK

    def _crypt(
        self,
        context: _LoopbackContext,
        buffers: BufferSet,
        sender: int,
        sequence_no: int,
        encrypt: bool,
    ) -> None:
        # The key stream is unique to the sender and sequence number.
        seal_key = typing.cast(bytes, context.seal_key)
        nonce = _hmac_sha256(seal_key, struct.pack("<HI", sender, sequence_no))[:16]
        cipher = Cipher(algorithms.AES(seal_key), modes.CTR(nonce))
        crypt = cipher.encryptor() if encrypt else cipher.decryptor()

        # The key stream continues across the buffers as if they were one message.
        buffer: SecurityBuffer
        for buffer in buffers:
            if buffer.mutable:
                buffer.data[:] = crypt.update(bytes(buffer.data))

        crypt.finalize()
