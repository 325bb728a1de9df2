# Copyright: (c) 2020, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import contextlib
import enum
import typing


class SecurityBufferType(enum.IntEnum):
    empty = 0  # SECBUFFER_EMPTY
    data = 1  # SECBUFFER_DATA
    token = 2  # SECBUFFER_TOKEN
    pkg_params = 3  # SECBUFFER_PKG_PARAMS
    missing = 4  # SECBUFFER_MISSING
    extra = 5  # SECBUFFER_EXTRA
    stream_trailer = 6  # SECBUFFER_STREAM_TRAILER
    stream_header = 7  # SECBUFFER_STREAM_HEADER
    padding = 9  # SECBUFFER_PADDING
    stream = 10  # SECBUFFER_STREAM
    mechlist = 11  # SECBUFFER_MECHLIST
    mechlist_signature = 12  # SECBUFFER_MECHLIST_SIGNATURE
    target = 13  # SECBUFFER_TARGET
    channel_bindings = 14  # SECBUFFER_CHANNEL_BINDINGS


class SecurityBufferFlags(enum.IntFlag):
    none = 0x00000000
    read_only_with_checksum = 0x10000000  # SECBUFFER_READONLY_WITH_CHECKSUM
    read_only = 0x80000000  # SECBUFFER_READONLY


class SecurityBuffer:
    """A single segment of a composite message.

    The buffer content is a `bytearray` that the security provider mutates in
    place. Buffers marked as read only are passed to the provider for
    integrity calculations but are never modified by an encrypt or decrypt
    operation.

    Args:
        buffer_type: The SecurityBufferType of the segment.
        data: The initial bytes, or an int to allocate a zeroed buffer of that size.
        read_only: Whether the provider must leave the content untouched.

    Attributes:
        buffer_type (SecurityBufferType): The type of the segment.
        data (bytearray): The mutable content of the segment.
        read_only (bool): Whether the segment is excluded from in place mutation.
    """

    def __init__(
        self,
        buffer_type: SecurityBufferType,
        data: typing.Optional[typing.Union[bytes, bytearray, int]] = None,
        read_only: bool = False,
    ) -> None:
        self.buffer_type = SecurityBufferType(buffer_type)
        self.read_only = read_only

        if data is None:
            data = b""

        if isinstance(data, int) and not isinstance(data, bool):
            if data < 0:
                raise ValueError("Cannot allocate a buffer with a negative length %d" % data)
            self.data = bytearray(data)
        elif isinstance(data, (bytes, bytearray, memoryview)):
            self.data = bytearray(data)
        else:
            raise TypeError("SecurityBuffer data must be bytes or the length of the buffer, got %s"
                            % type(data).__name__)

    def __len__(self) -> int:
        return len(self.data)

    def __bytes__(self) -> bytes:
        return bytes(self.data)

    def __repr__(self) -> str:
        return "<{0}.{1}(buffer_type={2!r}, data={3!r}, read_only={4})>".format(
            type(self).__module__, type(self).__name__, self.buffer_type, bytes(self.data), self.read_only)

    def __str__(self) -> str:
        return "%s(%s, %d bytes%s)" % (type(self).__name__, self.buffer_type.name, len(self.data),
                                       ", read only" if self.read_only else "")

    @property
    def flags(self) -> SecurityBufferFlags:
        """The SECBUFFER attribute flags that are OR'd with the buffer type."""
        return SecurityBufferFlags.read_only if self.read_only else SecurityBufferFlags.none

    @property
    def mutable(self) -> bool:
        """Whether an encrypt or decrypt operation may replace the content."""
        return not self.read_only and self.buffer_type == SecurityBufferType.data

    def to_bytes(self) -> bytes:
        return bytes(self.data)

    def release(self) -> None:
        """Zero out and drop the content of the buffer."""
        self.data[:] = bytes(len(self.data))
        del self.data[:]


IOV = typing.Union[SecurityBuffer, SecurityBufferType, bytes, bytearray,
                   typing.Tuple[SecurityBufferType, typing.Union[bytes, bytearray, int]]]


class BufferSet(typing.MutableSequence[SecurityBuffer]):
    """An ordered sequence of SecurityBuffer that form one logical message.

    The set holds references to the caller's buffers, it does not copy them,
    so any in place change made by the provider is visible to the caller.

    Args:
        buffers: The initial buffers in the set.
    """

    def __init__(self, buffers: typing.Optional[typing.Iterable[SecurityBuffer]] = None) -> None:
        self._buffers: typing.List[SecurityBuffer] = []
        for b in buffers or []:
            self.append(b)

    @classmethod
    def build(cls, iov: typing.Iterable[IOV]) -> "BufferSet":
        """Builds a BufferSet from a list of IOV shorthand values.

        Each entry can be one of the following:

        * `SecurityBuffer`: used as is.
        * `bytes`: a data buffer with that content.
        * `SecurityBufferType`/int: an empty buffer of that type.
        * `(type, bytes|int)`: a buffer of that type with the content or
          allocated length specified.

        Args:
            iov: The entries to convert.

        Returns:
            BufferSet: The converted buffer set.
        """
        buffers = cls()

        for entry in iov:
            if isinstance(entry, SecurityBuffer):
                buffers.append(entry)

            elif isinstance(entry, tuple):
                if len(entry) != 2:
                    raise ValueError("IOV entry tuple must contain 2 values, the type and data, see SecurityBuffer.")

                if not isinstance(entry[0], int):
                    raise ValueError("IOV entry[0] must specify the SecurityBufferType as an int")

                if not isinstance(entry[1], (bytes, bytearray, int)) or isinstance(entry[1], bool):
                    raise ValueError("IOV entry[1] must specify the buffer bytes or length of the buffer")

                buffers.append(SecurityBuffer(SecurityBufferType(entry[0]), entry[1]))

            elif isinstance(entry, int) and not isinstance(entry, bool):
                buffers.append(SecurityBuffer(SecurityBufferType(entry)))

            elif isinstance(entry, (bytes, bytearray)):
                buffers.append(SecurityBuffer(SecurityBufferType.data, entry))

            else:
                raise ValueError("IOV entry must be a SecurityBuffer, tuple, int, or bytes")

        return buffers

    def __getitem__(self, index: typing.Any) -> typing.Any:
        if isinstance(index, slice):
            return BufferSet(self._buffers[index])
        return self._buffers[index]

    def __setitem__(self, index: typing.Any, value: typing.Any) -> None:
        if isinstance(index, slice):
            value = list(value)
            for v in value:
                self._check_buffer(v)
        else:
            self._check_buffer(value)
        self._buffers[index] = value

    def __delitem__(self, index: typing.Any) -> None:
        del self._buffers[index]

    def __len__(self) -> int:
        return len(self._buffers)

    def __repr__(self) -> str:
        return "<{0}.{1}({2!r})>".format(type(self).__module__, type(self).__name__, self._buffers)

    def insert(self, index: int, value: SecurityBuffer) -> None:
        self._check_buffer(value)
        self._buffers.insert(index, value)

    def of_type(self, buffer_type: SecurityBufferType) -> typing.List[SecurityBuffer]:
        """Returns the buffers of the type specified in order."""
        return [b for b in self._buffers if b.buffer_type == buffer_type]

    def first(self, buffer_type: SecurityBufferType) -> typing.Optional[SecurityBuffer]:
        """Returns the first buffer of the type specified or None if there is none."""
        for b in self._buffers:
            if b.buffer_type == buffer_type:
                return b

        return None

    def snapshot(self) -> typing.Tuple[bytes, ...]:
        """A copy of the content of each buffer, useful to check what was mutated."""
        return tuple(bytes(b.data) for b in self._buffers)

    def _check_buffer(self, value: typing.Any) -> None:
        if not isinstance(value, SecurityBuffer):
            raise TypeError("BufferSet entries must be a SecurityBuffer, got %s" % type(value).__name__)


@contextlib.contextmanager
def temporary_buffer(
    buffer_type: SecurityBufferType,
    data: typing.Union[bytes, bytearray, int],
) -> typing.Iterator[SecurityBuffer]:
    """Creates a buffer that is released when the block exits.

    Used for buffers that only live for the duration of a single provider
    call, like the output token buffer of a handshake round. The buffer is
    released even if the block raises an exception.
    """
    buffer = SecurityBuffer(buffer_type, data)
    try:
        yield buffer
    finally:
        buffer.release()
