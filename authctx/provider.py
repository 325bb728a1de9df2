# Copyright: (c) 2020, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import abc
import datetime
import enum
import typing

from authctx.buffers import BufferSet


class SecStatus(enum.IntEnum):
    """Status codes returned across the security provider boundary.

    Values are the unsigned 32-bit SECURITY_STATUS codes. Any status with the
    high bit set is a failure.
    """

    SEC_E_OK = 0x00000000
    SEC_I_CONTINUE_NEEDED = 0x00090312
    SEC_I_COMPLETE_NEEDED = 0x00090313
    SEC_I_COMPLETE_AND_CONTINUE = 0x00090314
    SEC_I_CONTEXT_EXPIRED = 0x00090317
    SEC_I_INCOMPLETE_CREDENTIALS = 0x00090320
    SEC_I_RENEGOTIATE = 0x00090321
    SEC_E_INSUFFICIENT_MEMORY = 0x80090300
    SEC_E_INVALID_HANDLE = 0x80090301
    SEC_E_UNSUPPORTED_FUNCTION = 0x80090302
    SEC_E_TARGET_UNKNOWN = 0x80090303
    SEC_E_INTERNAL_ERROR = 0x80090304
    SEC_E_SECPKG_NOT_FOUND = 0x80090305
    SEC_E_INVALID_TOKEN = 0x80090308
    SEC_E_QOP_NOT_SUPPORTED = 0x8009030A
    SEC_E_LOGON_DENIED = 0x8009030C
    SEC_E_UNKNOWN_CREDENTIALS = 0x8009030D
    SEC_E_NO_CREDENTIALS = 0x8009030E
    SEC_E_MESSAGE_ALTERED = 0x8009030F
    SEC_E_OUT_OF_SEQUENCE = 0x80090310
    SEC_E_NO_AUTHENTICATING_AUTHORITY = 0x80090311
    SEC_E_CONTEXT_EXPIRED = 0x80090317
    SEC_E_INCOMPLETE_MESSAGE = 0x80090318
    SEC_E_BUFFER_TOO_SMALL = 0x80090321
    SEC_E_WRONG_PRINCIPAL = 0x80090322
    SEC_E_DECRYPT_FAILURE = 0x80090330
    SEC_E_BAD_BINDINGS = 0x80090346

    @staticmethod
    def is_failure(status: int) -> bool:
        return bool(status & 0x80000000)


class InitializeContextReqFlags(enum.IntFlag):
    none = 0x00000000
    delegate = 0x00000001  # ISC_REQ_DELEGATE
    mutual_auth = 0x00000002  # ISC_REQ_MUTUAL_AUTH
    replay_detect = 0x00000004  # ISC_REQ_REPLAY_DETECT
    sequence_detect = 0x00000008  # ISC_REQ_SEQUENCE_DETECT
    confidentiality = 0x00000010  # ISC_REQ_CONFIDENTIALITY
    use_session_key = 0x00000020  # ISC_REQ_USE_SESSION_KEY
    prompt_for_creds = 0x00000040  # ISC_REQ_PROMPT_FOR_CREDS
    use_supplied_creds = 0x00000080  # ISC_REQ_USE_SUPPLIED_CREDS
    allocate_memory = 0x00000100  # ISC_REQ_ALLOCATE_MEMORY
    use_dce_style = 0x00000200  # ISC_REQ_USE_DCE_STYLE
    datagram = 0x00000400  # ISC_REQ_DATAGRAM
    connection = 0x00000800  # ISC_REQ_CONNECTION
    call_level = 0x00001000  # ISC_REQ_CALL_LEVEL
    fragment_supplied = 0x00002000  # ISC_REQ_FRAGMENT_SUPPLIED
    extended_error = 0x00004000  # ISC_REQ_EXTENDED_ERROR
    stream = 0x00008000  # ISC_REQ_STREAM
    integrity = 0x00010000  # ISC_REQ_INTEGRITY
    identify = 0x00020000  # ISC_REQ_IDENTIFY
    null_session = 0x00040000  # ISC_REQ_NULL_SESSION
    manual_cred_validation = 0x00080000  # ISC_REQ_MANUAL_CRED_VALIDATION
    reserved1 = 0x00100000  # ISC_REQ_RESERVED1
    fragment_to_fit = 0x00200000  # ISC_REQ_FRAGMENT_TO_FIT
    forward_credentials = 0x00400000  # ISC_REQ_FORWARD_CREDENTIALS
    no_integrity = 0x00800000  # ISC_REQ_NO_INTEGRITY
    use_http_style = 0x01000000  # ISC_REQ_USE_HTTP_STYLE
    unverified_target_name = 0x20000000  # ISC_REQ_UNVERIFIED_TARGET_NAME
    confidentiality_only = 0x40000000  # ISC_REQ_CONFIDENTIALITY_ONLY


class InitializeContextRetFlags(enum.IntFlag):
    none = 0x00000000
    delegate = 0x00000001  # ISC_RET_DELEGATE
    mutual_auth = 0x00000002  # ISC_RET_MUTUAL_AUTH
    replay_detect = 0x00000004  # ISC_RET_REPLAY_DETECT
    sequence_detect = 0x00000008  # ISC_RET_SEQUENCE_DETECT
    confidentiality = 0x00000010  # ISC_RET_CONFIDENTIALITY
    use_session_key = 0x00000020  # ISC_RET_USE_SESSION_KEY
    used_collected_creds = 0x00000040  # ISC_RET_USED_COLLECTED_CREDS
    used_supplied_creds = 0x00000080  # ISC_RET_USED_SUPPLIED_CREDS
    allocated_memory = 0x00000100  # ISC_RET_ALLOCATED_MEMORY
    used_dce_style = 0x00000200  # ISC_RET_USED_DCE_STYLE
    datagram = 0x00000400  # ISC_RET_DATAGRAM
    connection = 0x00000800  # ISC_RET_CONNECTION
    intermediate_return = 0x00001000  # ISC_RET_INTERMEDIATE_RETURN
    call_level = 0x00002000  # ISC_RET_CALL_LEVEL
    extended_error = 0x00004000  # ISC_RET_EXTENDED_ERROR
    stream = 0x00008000  # ISC_RET_STREAM
    integrity = 0x00010000  # ISC_RET_INTEGRITY
    identify = 0x00020000  # ISC_RET_IDENTIFY
    null_session = 0x00040000  # ISC_RET_NULL_SESSION
    manual_cred_validation = 0x00080000  # ISC_RET_MANUAL_CRED_VALIDATION
    reserved1 = 0x00100000  # ISC_RET_RESERVED1
    fragment_only = 0x00200000  # ISC_RET_FRAGMENT_ONLY
    forward_credentials = 0x00400000  # ISC_RET_FORWARD_CREDENTIALS
    used_http_style = 0x01000000  # ISC_RET_USED_HTTP_STYLE
    no_additional_token = 0x02000000  # ISC_RET_NO_ADDITIONAL_TOKEN
    reauthentication = 0x08000000  # ISC_RET_REAUTHENTICATION
    confidentiality_only = 0x40000000  # ISC_RET_CONFIDENTIALITY_ONLY


class DataRepresentation(enum.IntEnum):
    network = 0x00000000  # SECURITY_NETWORK_DREP
    native = 0x00000010  # SECURITY_NATIVE_DREP


class LastTokenStatus(enum.IntEnum):
    yes = 0  # SecPkgAttrLastClientTokenYes
    no = 1  # SecPkgAttrLastClientTokenNo
    maybe = 2  # SecPkgAttrLastClientTokenMaybe


class PackageCapabilities(enum.IntFlag):
    none = 0x00000000
    integrity = 0x00000001  # SECPKG_FLAG_INTEGRITY
    privacy = 0x00000002  # SECPKG_FLAG_PRIVACY
    token_only = 0x00000004  # SECPKG_FLAG_TOKEN_ONLY
    datagram = 0x00000008  # SECPKG_FLAG_DATAGRAM
    connection = 0x00000010  # SECPKG_FLAG_CONNECTION
    multi_required = 0x00000020  # SECPKG_FLAG_MULTI_REQUIRED
    client_only = 0x00000040  # SECPKG_FLAG_CLIENT_ONLY
    extended_error = 0x00000080  # SECPKG_FLAG_EXTENDED_ERROR
    impersonation = 0x00000100  # SECPKG_FLAG_IMPERSONATION
    accept_win32_name = 0x00000200  # SECPKG_FLAG_ACCEPT_WIN32_NAME
    stream = 0x00000400  # SECPKG_FLAG_STREAM
    negotiable = 0x00000800  # SECPKG_FLAG_NEGOTIABLE
    gss_compatible = 0x00001000  # SECPKG_FLAG_GSS_COMPATIBLE
    logon = 0x00002000  # SECPKG_FLAG_LOGON
    ascii_buffers = 0x00004000  # SECPKG_FLAG_ASCII_BUFFERS
    fragment = 0x00008000  # SECPKG_FLAG_FRAGMENT
    mutual_auth = 0x00010000  # SECPKG_FLAG_MUTUAL_AUTH
    delegation = 0x00020000  # SECPKG_FLAG_DELEGATION
    readonly_with_checksum = 0x00040000  # SECPKG_FLAG_READONLY_WITH_CHECKSUM
    restricted_tokens = 0x00080000  # SECPKG_FLAG_RESTRICTED_TOKENS
    nego_extender = 0x00100000  # SECPKG_FLAG_NEGO_EXTENDER
    negotiable2 = 0x00200000  # SECPKG_FLAG_NEGOTIABLE2
    appcontainer_passthrough = 0x00400000  # SECPKG_FLAG_APPCONTAINER_PASSTHROUGH
    appcontainer_checks = 0x00800000  # SECPKG_FLAG_APPCONTAINER_CHECKS


class AuthenticationPackage(typing.NamedTuple):
    """Information about the security package of a context.

    Attributes:
        name: The name of the package.
        comment: The description of the package.
        capabilities: The capabilities the package supports.
        version: The version of the package protocol.
        rpc_id: The DCE RPC identifier of the package.
        max_token_size: The maximum size of a token produced by the package.
    """

    name: str
    comment: str
    capabilities: PackageCapabilities
    version: int
    rpc_id: int
    max_token_size: int


class ContextHandle(typing.NamedTuple):
    """An opaque handle to a context in a provider's resource table."""

    value: int


class CredentialHandle:
    """A reference to a credential acquired from a provider.

    The credential is owned by whoever acquired it. Authentication contexts
    only borrow it and never modify or release it, the same credential can be
    shared by multiple contexts.

    Args:
        package_name: The name of the security package the credential is for.
        handle: The provider specific credential value.
        principal: The principal name the credential was acquired for.
    """

    def __init__(
        self,
        package_name: str,
        handle: typing.Any,
        principal: typing.Optional[str] = None,
    ) -> None:
        self.package_name = package_name
        self.handle = handle
        self.principal = principal

    def __repr__(self) -> str:
        return "<{0}.{1}(package_name={2!r}, principal={3!r})>".format(
            type(self).__module__, type(self).__name__, self.package_name, self.principal)


class InitializeContextResult(typing.NamedTuple):
    """The reply of a provider handshake step.

    Attributes:
        status: The status code of the step.
        flags: The context attributes the provider negotiated.
        expiry: When the context expires, None if the provider did not report one.
        handle: The context handle, a new one on the first call of a context.
    """

    status: int
    flags: InitializeContextRetFlags
    expiry: typing.Optional[datetime.datetime]
    handle: typing.Optional[ContextHandle]


class SecurityProvider(metaclass=abc.ABCMeta):
    """The boundary to the provider that performs the cryptographic work.

    A provider owns a table of contexts referenced by opaque
    :class:`ContextHandle` values. The authentication context drives the
    handshake and message protection through these calls but never looks at
    the provider state itself.

    The handshake and message functions return a status code, a failure is
    reported through the status and not an exception. The query functions
    return the attribute value and raise
    :class:`authctx.exceptions.SecurityStatusError` on a failure.
    """

    @abc.abstractmethod
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
        """Performs a client handshake step.

        This is the equivalent of `InitializeSecurityContext`_ in SSPI. The
        output token is written into the first token buffer of
        `output_buffers` and the buffer is truncated to the length written.

        Args:
            credential: The credential to authenticate with.
            handle: The context handle, None on the first call.
            target_name: The target principal name, can be None.
            context_req: The requested context attributes.
            data_rep: The data representation on the target.
            input_buffers: The peer token and channel bindings, can be None.
            output_buffers: The caller allocated output token buffer(s).

        Returns:
            InitializeContextResult: The status, negotiated flags, expiry and handle.

        .. _InitializeSecurityContext:
            https://docs.microsoft.com/en-us/windows/win32/api/sspi/nf-sspi-initializesecuritycontextw
        """
        pass  # pragma: no cover

    @abc.abstractmethod
    def complete_token(self, handle: ContextHandle, buffers: BufferSet) -> int:
        """Completes an output token, the equivalent of `CompleteAuthToken`."""
        pass  # pragma: no cover

    @abc.abstractmethod
    def delete_context(self, handle: ContextHandle) -> None:
        """Releases the context handle, calling it with a released handle is a no-op."""
        pass  # pragma: no cover

    @abc.abstractmethod
    def query_session_key(self, handle: ContextHandle) -> bytes:
        pass  # pragma: no cover

    @abc.abstractmethod
    def query_max_signature_size(self, handle: ContextHandle) -> int:
        pass  # pragma: no cover

    @abc.abstractmethod
    def query_security_trailer_size(self, handle: ContextHandle) -> int:
        pass  # pragma: no cover

    @abc.abstractmethod
    def query_last_token_status(self, handle: ContextHandle) -> LastTokenStatus:
        pass  # pragma: no cover

    @abc.abstractmethod
    def query_package_name(self, handle: ContextHandle) -> typing.Optional[str]:
        pass  # pragma: no cover

    @abc.abstractmethod
    def query_package_info(self, handle: ContextHandle) -> AuthenticationPackage:
        pass  # pragma: no cover

    @abc.abstractmethod
    def make_signature(self, handle: ContextHandle, qop: int, buffers: BufferSet, sequence_no: int) -> int:
        """Signs the data buffers, the signature is written into the token buffer."""
        pass  # pragma: no cover

    @abc.abstractmethod
    def verify_signature(self, handle: ContextHandle, buffers: BufferSet, sequence_no: int) -> int:
        """Verifies the data buffers against the signature in the token buffer."""
        pass  # pragma: no cover

    @abc.abstractmethod
    def encrypt_message(self, handle: ContextHandle, qop: int, buffers: BufferSet, sequence_no: int) -> int:
        """Encrypts the writable data buffers in place and writes the signature into the token buffer."""
        pass  # pragma: no cover

    @abc.abstractmethod
    def decrypt_message(self, handle: ContextHandle, buffers: BufferSet, sequence_no: int) -> int:
        """Verifies the token buffer signature and decrypts the writable data buffers in place."""
        pass  # pragma: no cover
