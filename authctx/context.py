# Copyright: (c) 2020, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import abc
import base64
import contextlib
import datetime
import enum
import functools
import logging
import typing
import weakref

from authctx.buffers import (
    BufferSet,
    SecurityBuffer,
    SecurityBufferType,
    temporary_buffer,
)
from authctx.channel_bindings import ChannelBindings
from authctx.exceptions import (
    AuthContextError,
    ProtocolMisuseError,
    SecurityStatusError,
)
from authctx.provider import (
    AuthenticationPackage,
    ContextHandle,
    CredentialHandle,
    DataRepresentation,
    InitializeContextReqFlags,
    InitializeContextRetFlags,
    LastTokenStatus,
    SecStatus,
    SecurityProvider,
)
from authctx.token import AuthenticationToken

log = logging.getLogger(__name__)

F = typing.TypeVar("F", bound=typing.Callable[..., typing.Any])

MAX_TOKEN_SIZE = 64 * 1024

_VERIFY_MISMATCH = frozenset([
    SecStatus.SEC_E_MESSAGE_ALTERED,
    SecStatus.SEC_E_OUT_OF_SEQUENCE,
])


def wrap_system_error(error_type: typing.Type, context: typing.Optional[str] = None) -> typing.Callable[[F], F]:
    """Wraps a function that makes a provider call.

    Wraps a function that calls into the security provider and converts the
    provider error into a common :class:`AuthContextError`.

    Args:
        error_type: The provider error type to convert from.
        context: An optional message to add to the converted error.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: typing.Any, **kwargs: typing.Any) -> F:
            try:
                return func(*args, **kwargs)

            except error_type as native_err:
                raise AuthContextError(status=native_err.status, context_msg=context) from native_err

        return typing.cast(F, wrapper)

    return decorator


def _check_status(status: int, context_msg: str) -> int:
    """Raises the mapped AuthContextError if the status is a failure."""
    if SecStatus.is_failure(status):
        raise AuthContextError(status=status, context_msg=context_msg)

    return status


def _status_name(status: int) -> str:
    try:
        return SecStatus(status).name
    except ValueError:
        return "0x%08X" % status


def _validate_sequence_no(sequence_no: int) -> int:
    if not isinstance(sequence_no, int) or isinstance(sequence_no, bool) or not 0 <= sequence_no <= 0xFFFFFFFF:
        raise ValueError("Sequence number must be an unsigned 32-bit integer, got %r" % (sequence_no,))

    return sequence_no


def _build_message_buffers(buffers: typing.Iterable[SecurityBuffer], signature: SecurityBuffer) -> BufferSet:
    buffer_set = BufferSet(buffers)
    if buffer_set.first(SecurityBufferType.token) is not None:
        raise ValueError("Message buffers cannot contain a token buffer, the signature is passed separately")

    buffer_set.append(signature)
    return buffer_set


class EncryptedMessage(typing.NamedTuple):
    """Result of :meth:`AuthenticationContext.encrypt_message`.

    Attributes:
        message: The encrypted message bytes.
        signature: The signature/trailer needed to decrypt the message.
    """

    message: bytes
    signature: bytes


class ContextState(enum.Enum):
    initial = "initial"
    negotiating = "negotiating"
    established = "established"
    failed = "failed"
    closed = "closed"


class _ContextHandleRef:
    """Holds the provider handle of a context and releases it once."""

    def __init__(self, provider: SecurityProvider) -> None:
        self.provider = provider
        self.handle: typing.Optional[ContextHandle] = None

    def replace(self, handle: ContextHandle) -> None:
        """Store a new handle, releasing the previous one if the provider swapped it."""
        if self.handle is not None and self.handle != handle:
            log.debug("Provider replaced context handle %s with %s", self.handle.value, handle.value)
            self.release()

        self.handle = handle

    def release(self) -> None:
        handle, self.handle = self.handle, None
        if handle is None:
            return

        try:
            self.provider.delete_context(handle)
        except Exception as e:
            log.warning("Failed to release security context handle %s: %s", handle.value, e)


class AuthenticationContext(metaclass=abc.ABCMeta):
    """Base class for an authentication context.

    Defines the operations shared by a client and server authentication
    context: a token driven handshake and message protection once the context
    is established. Contexts can be used as a context manager which releases
    the provider handle on exit.

    A context is not thread safe, use a separate context for each concurrent
    handshake.
    """

    @property
    @abc.abstractmethod
    def token(self) -> typing.Optional[AuthenticationToken]:
        """The current authentication token to send to the peer."""
        pass  # pragma: no cover

    @property
    @abc.abstractmethod
    def done(self) -> bool:
        """Whether the authentication is done."""
        pass  # pragma: no cover

    @property
    @abc.abstractmethod
    def expiry(self) -> typing.Optional[datetime.datetime]:
        """When the authentication expires."""
        pass  # pragma: no cover

    @property
    @abc.abstractmethod
    def session_key(self) -> bytes:
        """The session key for the context."""
        pass  # pragma: no cover

    @property
    @abc.abstractmethod
    def package_name(self) -> str:
        """The name of the authentication package."""
        pass  # pragma: no cover

    @property
    @abc.abstractmethod
    def max_signature_size(self) -> int:
        pass  # pragma: no cover

    @property
    @abc.abstractmethod
    def security_trailer_size(self) -> int:
        pass  # pragma: no cover

    @abc.abstractmethod
    def continue_(
        self,
        token: typing.Optional[typing.Union[AuthenticationToken, bytes]] = None,
    ) -> AuthenticationToken:
        """Continue the authentication with the peer token."""
        pass  # pragma: no cover

    @abc.abstractmethod
    def get_authentication_package(self) -> AuthenticationPackage:
        pass  # pragma: no cover

    @abc.abstractmethod
    def make_signature(self, message: bytes, sequence_no: int) -> bytes:
        pass  # pragma: no cover

    @abc.abstractmethod
    def make_signature_buffers(self, buffers: typing.Iterable[SecurityBuffer], sequence_no: int) -> bytes:
        pass  # pragma: no cover

    @abc.abstractmethod
    def verify_signature(self, message: bytes, signature: bytes, sequence_no: int) -> bool:
        pass  # pragma: no cover

    @abc.abstractmethod
    def verify_signature_buffers(
        self,
        buffers: typing.Iterable[SecurityBuffer],
        signature: bytes,
        sequence_no: int,
    ) -> bool:
        pass  # pragma: no cover

    @abc.abstractmethod
    def encrypt_message(self, message: bytes, sequence_no: int) -> EncryptedMessage:
        pass  # pragma: no cover

    @abc.abstractmethod
    def encrypt_message_buffers(self, buffers: typing.Iterable[SecurityBuffer], sequence_no: int) -> bytes:
        pass  # pragma: no cover

    @abc.abstractmethod
    def decrypt_message(self, message: EncryptedMessage, sequence_no: int) -> bytes:
        pass  # pragma: no cover

    @abc.abstractmethod
    def decrypt_message_buffers(
        self,
        buffers: typing.Iterable[SecurityBuffer],
        signature: bytes,
        sequence_no: int,
    ) -> None:
        pass  # pragma: no cover

    @abc.abstractmethod
    def close(self) -> None:
        """Release the provider resources of the context."""
        pass  # pragma: no cover

    def __enter__(self) -> "AuthenticationContext":
        return self

    def __exit__(self, *args: typing.Any) -> None:
        self.close()


class ClientAuthenticationContext(AuthenticationContext):
    """A client authentication context.

    Drives the client side of a security context negotiation through a
    :class:`SecurityProvider`. The caller calls :meth:`continue_` with no
    token to start the exchange, sends :attr:`token` to the peer, and calls
    :meth:`continue_` with each reply until :attr:`done` is True. After that
    the message protection functions can be used.

    Sequence numbers for the message protection functions are supplied by the
    caller, the context does not track them. The transport is responsible for
    knowing which sequence number a message belongs to.

    The provider handle is released by :meth:`close`, on exiting a `with`
    block, or when the object is garbage collected as a last resort. Callers
    should always close the context explicitly.

    Args:
        provider: The security provider that performs the cryptographic work.
        credential: The credential to authenticate with, it is borrowed and not released by the context.
        context_req: The requested context attributes, `allocate_memory` is always removed.
        target: The target principal name, an empty string is the same as None.
        channel_binding: Optional channel binding token, raw SEC_CHANNEL_BINDINGS bytes or ChannelBindings.
        data_rep: The data representation on the target.
    """

    def __init__(
        self,
        provider: SecurityProvider,
        credential: CredentialHandle,
        context_req: InitializeContextReqFlags = InitializeContextReqFlags.none,
        target: typing.Optional[str] = None,
        channel_binding: typing.Optional[typing.Union[bytes, ChannelBindings]] = None,
        data_rep: DataRepresentation = DataRepresentation.native,
    ) -> None:
        self._provider = provider
        self._credential = credential
        self._context_req = InitializeContextReqFlags(context_req) & ~InitializeContextReqFlags.allocate_memory
        self._target = target or None
        self._data_rep = DataRepresentation(data_rep)

        if isinstance(channel_binding, ChannelBindings):
            channel_binding = channel_binding.to_sec_channel_bindings()
        self._channel_binding = channel_binding

        self._token: typing.Optional[AuthenticationToken] = None
        self._flags: typing.Optional[InitializeContextRetFlags] = None
        self._expiry: typing.Optional[datetime.datetime] = None
        self._state = ContextState.initial
        self._token_count = 0

        self._handle_ref = _ContextHandleRef(provider)
        self._finalizer = weakref.finalize(self, self._handle_ref.release)

    def __repr__(self) -> str:
        return "<{0}.{1}(package={2!r}, target={3!r}, state={4})>".format(
            type(self).__module__, type(self).__name__, self._credential.package_name, self._target,
            self._state.value)

    @property
    def credential(self) -> CredentialHandle:
        return self._credential

    @property
    def context_req(self) -> InitializeContextReqFlags:
        """The requested context attributes."""
        return self._context_req

    @property
    def target(self) -> typing.Optional[str]:
        return self._target

    @property
    def data_rep(self) -> DataRepresentation:
        return self._data_rep

    @property
    def channel_binding(self) -> typing.Optional[bytes]:
        return self._channel_binding

    @property
    def state(self) -> ContextState:
        return self._state

    @property
    def token(self) -> typing.Optional[AuthenticationToken]:
        return self._token

    @property
    def done(self) -> bool:
        return self._state == ContextState.established

    @property
    def flags(self) -> typing.Optional[InitializeContextRetFlags]:
        """The context attributes negotiated by the provider, None until the first round."""
        return self._flags

    @property
    def expiry(self) -> typing.Optional[datetime.datetime]:
        return self._expiry

    @property
    def round_count(self) -> int:
        """The number of handshake rounds that have completed."""
        return self._token_count

    @property
    def handle(self) -> typing.Optional[ContextHandle]:
        return self._handle_ref.handle

    @property
    @wrap_system_error(SecurityStatusError, "Retrieving session key")
    def session_key(self) -> bytes:
        return self._provider.query_session_key(self._require_handle())

    @property
    @wrap_system_error(SecurityStatusError, "Retrieving max signature size")
    def max_signature_size(self) -> int:
        return self._provider.query_max_signature_size(self._require_handle())

    @property
    @wrap_system_error(SecurityStatusError, "Retrieving security trailer size")
    def security_trailer_size(self) -> int:
        return self._provider.query_security_trailer_size(self._require_handle())

    @property
    @wrap_system_error(SecurityStatusError, "Retrieving last token status")
    def last_token_status(self) -> LastTokenStatus:
        return self._provider.query_last_token_status(self._require_handle())

    @property
    @wrap_system_error(SecurityStatusError, "Retrieving package name")
    def package_name(self) -> str:
        name = None
        if self._handle_ref.handle is not None:
            name = self._provider.query_package_name(self._handle_ref.handle)

        return name or self._credential.package_name

    @wrap_system_error(SecurityStatusError, "Retrieving package info")
    def get_authentication_package(self) -> AuthenticationPackage:
        return self._provider.query_package_info(self._require_handle())

    def continue_(
        self,
        token: typing.Optional[typing.Union[AuthenticationToken, bytes]] = None,
    ) -> AuthenticationToken:
        """Continue the authentication with the peer token.

        Performs one round of the handshake. The first call must be made
        without a token, every later call must pass the most recent reply from
        the peer. The output of the round is returned and stored in
        :attr:`token`, it should be sent to the peer unless it is empty.

        Args:
            token: The peer token to process, None on the first call.

        Returns:
            AuthenticationToken: The token produced by this round.

        Raises:
            ProtocolMisuseError: The token sequence was not followed or the context can no longer progress.
            AuthContextError: The provider failed the round, the context must be discarded.
        """
        if self._state == ContextState.established:
            raise ProtocolMisuseError(context_msg="Authentication is already done")

        elif self._state == ContextState.failed:
            raise ProtocolMisuseError(context_msg="A previous round failed, the context must be discarded")

        elif self._state == ContextState.closed:
            raise ProtocolMisuseError(context_msg="The context has been closed")

        elif self._state == ContextState.initial and token is not None:
            raise ProtocolMisuseError(context_msg="No input token is expected on the first round")

        elif self._state == ContextState.negotiating and token is None:
            raise ProtocolMisuseError(context_msg="An input token from the peer is required after the first round")

        in_token = bytes(token) if token is not None else None
        log.debug("Client context step %d input: %s", self._token_count,
                  base64.b64encode(in_token or b"").decode())

        try:
            status, out_token = self._gen_client_context(in_token)
        except Exception:
            self._state = ContextState.failed
            raise

        self._token = AuthenticationToken.parse(self._credential.package_name, self._token_count, True, out_token)
        self._token_count += 1

        if status in [SecStatus.SEC_I_CONTINUE_NEEDED, SecStatus.SEC_I_COMPLETE_AND_CONTINUE]:
            self._state = ContextState.negotiating
        else:
            self._state = ContextState.established

        log.debug("Client context step %d output (%s): %s", self._token.round_index, _status_name(status),
                  self._token.to_base64())

        return self._token

    def _gen_client_context(self, in_token: typing.Optional[bytes]) -> typing.Tuple[int, bytes]:
        first_round = self._handle_ref.handle is None and self._state == ContextState.initial

        with contextlib.ExitStack() as stack:
            in_buffers = BufferSet()
            if in_token is not None:
                in_buffers.append(SecurityBuffer(SecurityBufferType.token, in_token))

            if first_round and self._channel_binding is not None:
                in_buffers.append(stack.enter_context(
                    temporary_buffer(SecurityBufferType.channel_bindings, self._channel_binding)))

            out_buffer = stack.enter_context(temporary_buffer(SecurityBufferType.token, MAX_TOKEN_SIZE))
            out_buffers = BufferSet([out_buffer])

            res = self._provider.initialize_context(
                self._credential,
                self._handle_ref.handle,
                self._target,
                self._context_req,
                self._data_rep,
                in_buffers if in_buffers else None,
                out_buffers,
            )

            # The reply is recorded before the status is checked, a failed round still reflects the attempt.
            if res.handle is not None:
                self._handle_ref.replace(res.handle)
            self._flags = InitializeContextRetFlags(res.flags)
            self._expiry = res.expiry

            status = _check_status(res.status, "Processing security token")

            if status in [SecStatus.SEC_I_COMPLETE_NEEDED, SecStatus.SEC_I_COMPLETE_AND_CONTINUE]:
                _check_status(self._provider.complete_token(self._require_handle(), out_buffers),
                              "Completing security token")

            return status, bytes(out_buffer.data)

    def make_signature(self, message: bytes, sequence_no: int) -> bytes:
        return self.make_signature_buffers([SecurityBuffer(SecurityBufferType.data, message)], sequence_no)

    def make_signature_buffers(self, buffers: typing.Iterable[SecurityBuffer], sequence_no: int) -> bytes:
        """Make a signature over the buffers.

        The buffers are not modified, the signature covers every data buffer
        including read only ones. The signature is returned separately so the
        buffers cannot include a token buffer.

        Args:
            buffers: The message buffers to sign.
            sequence_no: The sequence number of the message.

        Returns:
            bytes: The signature blob.
        """
        handle = self._require_established()
        sequence_no = _validate_sequence_no(sequence_no)

        signature = SecurityBuffer(SecurityBufferType.token, self.max_signature_size)
        buffer_set = _build_message_buffers(buffers, signature)

        _check_status(self._provider.make_signature(handle, 0, buffer_set, sequence_no), "Signing message")

        return bytes(signature.data)

    def verify_signature(self, message: bytes, signature: bytes, sequence_no: int) -> bool:
        return self.verify_signature_buffers([SecurityBuffer(SecurityBufferType.data, message)], signature,
                                             sequence_no)

    def verify_signature_buffers(
        self,
        buffers: typing.Iterable[SecurityBuffer],
        signature: bytes,
        sequence_no: int,
    ) -> bool:
        """Verify a signature over the buffers.

        A signature that does not match the message or the sequence number is
        reported as False. A malformed input raises an error.

        Args:
            buffers: The message buffers to verify.
            signature: The signature blob for the message.
            sequence_no: The sequence number of the message.

        Returns:
            bool: True if the signature is valid, otherwise False.
        """
        handle = self._require_established()
        sequence_no = _validate_sequence_no(sequence_no)

        buffer_set = _build_message_buffers(buffers, SecurityBuffer(SecurityBufferType.token, signature))

        status = self._provider.verify_signature(handle, buffer_set, sequence_no)
        if status in _VERIFY_MISMATCH:
            log.debug("Signature verification for sequence %d failed: %s", sequence_no, _status_name(status))
            return False

        _check_status(status, "Verifying message")
        return True

    def encrypt_message(self, message: bytes, sequence_no: int) -> EncryptedMessage:
        data = SecurityBuffer(SecurityBufferType.data, message)
        signature = self.encrypt_message_buffers([data], sequence_no)

        return EncryptedMessage(message=bytes(data.data), signature=signature)

    def encrypt_message_buffers(self, buffers: typing.Iterable[SecurityBuffer], sequence_no: int) -> bytes:
        """Encrypt the buffers in place.

        Data buffers are replaced with their encrypted form. Buffers marked as
        read only are included in the signature but are not encrypted, this
        can be used to sign a plaintext header alongside an encrypted payload.
        The buffers cannot include a token buffer, the signature is returned.

        Args:
            buffers: The message buffers to encrypt.
            sequence_no: The sequence number of the message.

        Returns:
            bytes: The signature needed to decrypt the buffers.
        """
        handle = self._require_established()
        sequence_no = _validate_sequence_no(sequence_no)

        signature = SecurityBuffer(SecurityBufferType.token, self.security_trailer_size)
        buffer_set = _build_message_buffers(buffers, signature)

        _check_status(self._provider.encrypt_message(handle, 0, buffer_set, sequence_no), "Encrypting message")

        return bytes(signature.data)

    def decrypt_message(self, message: EncryptedMessage, sequence_no: int) -> bytes:
        data = SecurityBuffer(SecurityBufferType.data, message.message)
        self.decrypt_message_buffers([data], message.signature, sequence_no)

        return bytes(data.data)

    def decrypt_message_buffers(
        self,
        buffers: typing.Iterable[SecurityBuffer],
        signature: bytes,
        sequence_no: int,
    ) -> None:
        """Decrypt the buffers in place.

        Buffers marked as read only are verified but left as is.

        Args:
            buffers: The message buffers to decrypt.
            signature: The signature returned when the buffers were encrypted.
            sequence_no: The sequence number used when the buffers were encrypted.

        Raises:
            MessageAlteredError: The signature does not match the buffers.
            OutOfSequenceError: The sequence number does not match the one used to encrypt.
        """
        handle = self._require_established()
        sequence_no = _validate_sequence_no(sequence_no)

        buffer_set = _build_message_buffers(buffers, SecurityBuffer(SecurityBufferType.token, signature))

        _check_status(self._provider.decrypt_message(handle, buffer_set, sequence_no), "Decrypting message")

    def close(self) -> None:
        """Release the provider context handle.

        This is safe to call multiple times and never raises, a failure to
        release the handle is logged. The credential is not released.
        """
        self._finalizer()
        self._state = ContextState.closed

    def _require_handle(self) -> ContextHandle:
        handle = self._handle_ref.handle
        if handle is None:
            raise ProtocolMisuseError(context_msg="The context has no provider handle, no round has completed "
                                                  "or it has been closed")

        return handle

    def _require_established(self) -> ContextHandle:
        if self._state != ContextState.established:
            raise ProtocolMisuseError(context_msg="Message protection requires an established context, current "
                                                  "state is %s" % self._state.value)

        return self._require_handle()
