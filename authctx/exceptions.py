# Copyright: (c) 2020, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import enum
import typing


class ErrorCode(enum.IntEnum):
    """Common error codes for security context operations.

    Each code groups one or more provider status codes into a category that
    callers can act on without knowing the provider that raised it.
    """

    failure = 1
    insufficient_memory = 2
    invalid_handle = 3
    unsupported_function = 4
    target_unknown = 5
    invalid_token = 6
    logon_denied = 7
    no_credentials = 8
    message_altered = 9
    out_of_sequence = 10
    context_expired = 11
    bad_bindings = 12
    protocol_misuse = 13


class SecurityStatusError(Exception):
    """Error raised by a security provider for a failed native call.

    This is the provider level error, the equivalent of a `WindowsError` from
    SSPI. It is converted into an :class:`AuthContextError` before it reaches
    the caller of the authentication context.

    Args:
        status: The provider status code, as an unsigned 32-bit int.
        message: Optional description from the provider.
    """

    def __init__(self, status: int, message: typing.Optional[str] = None) -> None:
        self.status = status & 0xFFFFFFFF
        self.message = message or "Security provider call failed"
        super().__init__(self.status, self.message)

    def __str__(self) -> str:
        return "%s (0x%08X)" % (self.message, self.status)


# Implementation is inspired by the python-gssapi project https://github.com/pythongssapi/python-gssapi.
# https://github.com/pythongssapi/python-gssapi/blob/826c02de1c1885896924bf342c60087f369c6b1a/gssapi/raw/misc.pyx#L180
class _AuthContextErrorRegistry(type):
    __registry: typing.Dict[int, "_AuthContextErrorRegistry"] = {}
    __status_map: typing.Dict[int, int] = {}

    def __init__(
        cls,
        name: str,
        bases: typing.Tuple[type, ...],
        attributes: typing.Dict[str, typing.Any],
    ) -> None:
        # Load up the registry with the class so we can look it up when creating an AuthContextError.
        error_code = getattr(cls, "ERROR_CODE", None)

        if error_code is not None and error_code not in cls.__registry:
            cls.__registry[error_code] = cls

        # Map the provider status codes to the common error code.
        codes = attributes.get("_STATUS_CODE", None)
        if codes is not None:
            if not isinstance(codes, (list, tuple)):
                codes = [codes]

            for c in codes:
                cls.__status_map[c & 0xFFFFFFFF] = error_code

    def __call__(
        cls,
        error_code: typing.Optional[int] = None,
        status: typing.Optional[int] = None,
        context_msg: typing.Optional[str] = None,
    ) -> "AuthContextError":
        error_code = error_code if error_code is not None else getattr(cls, "ERROR_CODE", None)

        if error_code is None:
            if status is None:
                raise ValueError("%s requires either an error_code or status" % cls.__name__)

            error_code = cls.__status_map.get(status & 0xFFFFFFFF, ErrorCode.failure)

        new_cls = cls.__registry.get(error_code, cls)
        return super(_AuthContextErrorRegistry, new_cls).__call__(error_code, status, context_msg)


class AuthContextError(Exception, metaclass=_AuthContextErrorRegistry):
    """Common error for authentication context operations.

    Creates a common error record for failures in the authentication context.
    The error can wrap a raw provider status code and is converted into the
    subclass registered for that status when one exists.

    Args:
        error_code: The ErrorCode for the error, this must be set if status is not set.
        status: The provider status code, this must be set if error_code is not set.
        context_msg: Optional message to provide more context around the error.

    Attributes:
        status (Optional[int]): The provider status code if one was provided.
    """

    # Classes the subclass this type need to provide the following class attribute:
    #
    # ERROR_CODE = common ErrorCode value for the exception
    # _BASE_MESSAGE = common string that explains the error code
    #
    # _STATUS_CODE = The provider status code(s) that map to the common error code

    def __init__(
        self,
        error_code: typing.Optional[int] = None,
        status: typing.Optional[int] = None,
        context_msg: typing.Optional[str] = None,
    ) -> None:
        self.status = status & 0xFFFFFFFF if status is not None else None
        self._error_code = error_code
        self._context_message = context_msg

        super(AuthContextError, self).__init__(self.message)

    @property
    def message(self) -> str:
        error_code = self._error_code if self._error_code is not None else 0xFFFFFFFF
        base_message = getattr(self, "_BASE_MESSAGE", "Unknown error code")

        msg = "AuthContextError (%d): %s" % (error_code, base_message)
        if self.status is not None:
            msg += " (0x%08X)" % self.status

        if self._context_message:
            msg += ", Context: %s" % self._context_message

        return msg


class ProviderFailureError(AuthContextError):
    ERROR_CODE = ErrorCode.failure

    _BASE_MESSAGE = "The security provider reported a failure"
    _STATUS_CODE = [
        0x80090304,  # SEC_E_INTERNAL_ERROR
        0x80090305,  # SEC_E_SECPKG_NOT_FOUND
        0x8009030A,  # SEC_E_QOP_NOT_SUPPORTED
    ]


class ResourceExhaustionError(AuthContextError):
    ERROR_CODE = ErrorCode.insufficient_memory

    _BASE_MESSAGE = "Not enough memory or buffer space is available to complete the request"
    _STATUS_CODE = [
        0x80090300,  # SEC_E_INSUFFICIENT_MEMORY
        0x80090321,  # SEC_E_BUFFER_TOO_SMALL
    ]


class InvalidHandleError(AuthContextError):
    ERROR_CODE = ErrorCode.invalid_handle

    _BASE_MESSAGE = "The handle specified is invalid"
    _STATUS_CODE = 0x80090301  # SEC_E_INVALID_HANDLE


class UnsupportedFunctionError(AuthContextError):
    ERROR_CODE = ErrorCode.unsupported_function

    _BASE_MESSAGE = "Operation not supported or available"
    _STATUS_CODE = 0x80090302  # SEC_E_UNSUPPORTED_FUNCTION


class TargetUnknownError(AuthContextError):
    ERROR_CODE = ErrorCode.target_unknown

    _BASE_MESSAGE = "The specified target is unknown or unreachable"
    _STATUS_CODE = [
        0x80090303,  # SEC_E_TARGET_UNKNOWN
        0x80090322,  # SEC_E_WRONG_PRINCIPAL
    ]


class InvalidTokenError(AuthContextError):
    ERROR_CODE = ErrorCode.invalid_token

    _BASE_MESSAGE = "A token was invalid"
    _STATUS_CODE = [
        0x80090308,  # SEC_E_INVALID_TOKEN
        0x80090318,  # SEC_E_INCOMPLETE_MESSAGE
    ]


class LogonDeniedError(AuthContextError):
    ERROR_CODE = ErrorCode.logon_denied

    _BASE_MESSAGE = "The logon attempt failed"
    _STATUS_CODE = [
        0x8009030C,  # SEC_E_LOGON_DENIED
        0x80090311,  # SEC_E_NO_AUTHENTICATING_AUTHORITY
    ]


class NoCredentialsError(AuthContextError):
    ERROR_CODE = ErrorCode.no_credentials

    _BASE_MESSAGE = "No credentials are available in the security package"
    _STATUS_CODE = [
        0x8009030D,  # SEC_E_UNKNOWN_CREDENTIALS
        0x8009030E,  # SEC_E_NO_CREDENTIALS
    ]


class MessageAlteredError(AuthContextError):
    ERROR_CODE = ErrorCode.message_altered

    _BASE_MESSAGE = "The message or signature supplied for verification has been altered"
    _STATUS_CODE = [
        0x8009030F,  # SEC_E_MESSAGE_ALTERED
        0x80090330,  # SEC_E_DECRYPT_FAILURE
    ]


class OutOfSequenceError(AuthContextError):
    ERROR_CODE = ErrorCode.out_of_sequence

    _BASE_MESSAGE = "The message supplied for verification is out of sequence"
    _STATUS_CODE = 0x80090310  # SEC_E_OUT_OF_SEQUENCE


class ContextExpiredError(AuthContextError):
    ERROR_CODE = ErrorCode.context_expired

    _BASE_MESSAGE = "The context has expired and can no longer be used"
    _STATUS_CODE = 0x80090317  # SEC_E_CONTEXT_EXPIRED


class BadBindingsError(AuthContextError):
    ERROR_CODE = ErrorCode.bad_bindings

    _BASE_MESSAGE = "Invalid channel bindings"
    _STATUS_CODE = 0x80090346  # SEC_E_BAD_BINDINGS


class ProtocolMisuseError(AuthContextError):
    ERROR_CODE = ErrorCode.protocol_misuse

    _BASE_MESSAGE = "The authentication context was used out of sequence"
