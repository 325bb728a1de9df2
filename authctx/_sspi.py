# Copyright: (c) 2020, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import datetime
import itertools
import logging
import typing

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

HAS_SSPI = True
SSPI_IMP_ERR = None
try:
    import pywintypes
    import sspicon
    import win32security
except ImportError as e:
    SSPI_IMP_ERR = str(e)
    HAS_SSPI = False
    log.debug("SSPI bindings not available, cannot use SSPIProvider: %s" % e)


def _available_packages() -> typing.List[str]:
    """Return a list of security packages SSPIProvider can offer."""
    if not HAS_SSPI:
        return []

    return [p["Name"] for p in win32security.EnumerateSecurityPackages()]


def _native_status(error: Exception) -> int:
    return getattr(error, "winerror", SecStatus.SEC_E_INTERNAL_ERROR) & 0xFFFFFFFF


def _to_datetime(expiry: typing.Any) -> typing.Optional[datetime.datetime]:
    """Converts the SSPI TimeStamp value to a UTC datetime."""
    if expiry is None:
        return None

    try:
        if isinstance(expiry, datetime.datetime):
            if expiry.tzinfo is None:
                expiry = expiry.replace(tzinfo=datetime.timezone.utc)
            return expiry.astimezone(datetime.timezone.utc)

        return datetime.datetime.fromtimestamp(int(expiry), tz=datetime.timezone.utc)

    except (OverflowError, OSError, ValueError) as e:
        # Some packages report a never expiring context with a timestamp that is out of range.
        log.debug("Failed to convert SSPI expiry %r: %s", expiry, e)
        return None


def _to_native_buffers(buffers: typing.Optional[BufferSet]) -> typing.Any:
    """Converts the BufferSet to a PySecBufferDesc."""
    if buffers is None:
        return None

    native = win32security.PySecBufferDescType()
    for buffer in buffers:
        native_buffer = win32security.PySecBufferType(len(buffer.data), int(buffer.buffer_type | buffer.flags))
        if buffer.data:
            native_buffer.Buffer = bytes(buffer.data)
        native.append(native_buffer)

    return native


def _copy_native_buffers(native: typing.Any, buffers: BufferSet) -> None:
    """Copies the native output back into the writable buffers of the set."""
    buffer: SecurityBuffer
    for idx, buffer in enumerate(buffers):
        if buffer.read_only:
            continue

        buffer.data[:] = native[idx].Buffer or b""


class SSPIProvider(SecurityProvider):
    """Security provider backed by Windows SSPI.

    Uses the `pywin32`_ bindings to call SSPI. Each context handle is an index
    into a table of `PyCtxtHandle` objects owned by the provider.

    .. _pywin32:
        https://github.com/mhammond/pywin32
    """

    def __init__(self) -> None:
        if not HAS_SSPI:
            raise ImportError("SSPIProvider requires the Windows only pywin32 library: %s" % SSPI_IMP_ERR)

        self._contexts: typing.Dict[int, typing.Any] = {}
        self._handle_counter = itertools.count(1)

    def acquire_credentials(
        self,
        package: str = "Negotiate",
        username: typing.Optional[str] = None,
        password: typing.Optional[str] = None,
        domain: typing.Optional[str] = None,
    ) -> CredentialHandle:
        """Acquire an outbound credential.

        Args:
            package: The SSPI security package name.
            username: The user to authenticate as, None uses the current user.
            password: The password for username.
            domain: The domain of username.

        Returns:
            CredentialHandle: The credential to use for a context.
        """
        auth_data = None
        if username:
            auth_data = (username, domain or "", password or "")

        try:
            handle, _ = win32security.AcquireCredentialsHandle(None, package, sspicon.SECPKG_CRED_OUTBOUND, None,
                                                               auth_data)
        except pywintypes.error as e:
            raise SecurityStatusError(_native_status(e), e.strerror) from e

        principal = "%s\\%s" % (domain, username) if domain and username else username
        return CredentialHandle(package, handle, principal=principal)

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
        if handle is None:
            context_in = None
            context = win32security.PyCtxtHandleType()
        else:
            context = context_in = self._contexts.get(handle.value, None)
            if context is None:
                return InitializeContextResult(SecStatus.SEC_E_INVALID_HANDLE, InitializeContextRetFlags.none, None,
                                               None)

        native_in = _to_native_buffers(input_buffers)
        native_out = _to_native_buffers(output_buffers)

        try:
            status, attributes, expiry = win32security.InitializeSecurityContext(
                credential.handle, context_in, target_name, int(context_req), int(data_rep), native_in, context,
                native_out)
        except pywintypes.error as e:
            log.debug("InitializeSecurityContext failed: %s", e)
            return InitializeContextResult(_native_status(e), InitializeContextRetFlags.none, None, handle)

        if handle is None:
            handle = ContextHandle(next(self._handle_counter))
            self._contexts[handle.value] = context

        _copy_native_buffers(native_out, output_buffers)

        return InitializeContextResult(status & 0xFFFFFFFF, InitializeContextRetFlags(attributes),
                                       _to_datetime(expiry), handle)

    def complete_token(self, handle: ContextHandle, buffers: BufferSet) -> int:
        context = self._contexts.get(handle.value, None)
        if context is None:
            return SecStatus.SEC_E_INVALID_HANDLE

        native = _to_native_buffers(buffers)
        try:
            context.CompleteAuthToken(native)
        except pywintypes.error as e:
            return _native_status(e)

        _copy_native_buffers(native, buffers)
        return SecStatus.SEC_E_OK

    def delete_context(self, handle: ContextHandle) -> None:
        context = self._contexts.pop(handle.value, None)
        if context is None:
            return

        try:
            context.DeleteSecurityContext()
        except pywintypes.error as e:
            raise SecurityStatusError(_native_status(e), e.strerror) from e

    def query_session_key(self, handle: ContextHandle) -> bytes:
        return bytes(self._query(handle, sspicon.SECPKG_ATTR_SESSION_KEY))

    def query_max_signature_size(self, handle: ContextHandle) -> int:
        return self._query(handle, sspicon.SECPKG_ATTR_SIZES)["MaxSignature"]

    def query_security_trailer_size(self, handle: ContextHandle) -> int:
        return self._query(handle, sspicon.SECPKG_ATTR_SIZES)["SecurityTrailer"]

    def query_last_token_status(self, handle: ContextHandle) -> LastTokenStatus:
        # SECPKG_ATTR_LAST_CLIENT_TOKEN_STATUS is not exposed as a constant by sspicon.
        return LastTokenStatus(self._query(handle, 30))

    def query_package_name(self, handle: ContextHandle) -> typing.Optional[str]:
        return self.query_package_info(handle).name or None

    def query_package_info(self, handle: ContextHandle) -> AuthenticationPackage:
        info = self._query(handle, sspicon.SECPKG_ATTR_PACKAGE_INFO)

        return AuthenticationPackage(
            name=info["Name"],
            comment=info["Comment"],
            capabilities=PackageCapabilities(info["Capabilities"]),
            version=info["Version"],
            rpc_id=info["RPCID"],
            max_token_size=info["MaxToken"],
        )

    def make_signature(self, handle: ContextHandle, qop: int, buffers: BufferSet, sequence_no: int) -> int:
        return self._message_call(handle, buffers, "MakeSignature", qop, sequence_no)

    def verify_signature(self, handle: ContextHandle, buffers: BufferSet, sequence_no: int) -> int:
        return self._message_call(handle, buffers, "VerifySignature", None, sequence_no)

    def encrypt_message(self, handle: ContextHandle, qop: int, buffers: BufferSet, sequence_no: int) -> int:
        return self._message_call(handle, buffers, "EncryptMessage", qop, sequence_no)

    def decrypt_message(self, handle: ContextHandle, buffers: BufferSet, sequence_no: int) -> int:
        return self._message_call(handle, buffers, "DecryptMessage", None, sequence_no)

    def _query(self, handle: ContextHandle, attribute: int) -> typing.Any:
        context = self._contexts.get(handle.value, None)
        if context is None:
            raise SecurityStatusError(SecStatus.SEC_E_INVALID_HANDLE, "Unknown SSPI context handle %d" % handle.value)

        try:
            return context.QueryContextAttributes(attribute)

        except NotImplementedError as e:
            raise SecurityStatusError(SecStatus.SEC_E_UNSUPPORTED_FUNCTION, str(e)) from e

        except pywintypes.error as e:
            raise SecurityStatusError(_native_status(e), e.strerror) from e

    def _message_call(
        self,
        handle: ContextHandle,
        buffers: BufferSet,
        method: str,
        qop: typing.Optional[int],
        sequence_no: int,
    ) -> int:
        context = self._contexts.get(handle.value, None)
        if context is None:
            return SecStatus.SEC_E_INVALID_HANDLE

        native = _to_native_buffers(buffers)
        args = (native, sequence_no) if qop is None else (qop, native, sequence_no)

        try:
            getattr(context, method)(*args)
        except pywintypes.error as e:
            log.debug("SSPI %s failed: %s", method, e)
            return _native_status(e)

        _copy_native_buffers(native, buffers)
        return SecStatus.SEC_E_OK
