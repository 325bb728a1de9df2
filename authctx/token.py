# Copyright: (c) 2020, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import base64
import typing


class AuthenticationToken:
    """An opaque token produced by a handshake round.

    The token is the raw output of the security provider for one round of the
    authentication exchange. It is tagged with the package that produced it
    and the index of the round so the transport layer knows where it belongs
    in the exchange. Tokens are immutable once created.

    The structure of the bytes is mechanism specific and is not interpreted
    here, it is up to the peer to parse it.

    Args:
        package_name: The name of the security package that produced the token.
        round_index: The index of the handshake round, starting at 0.
        client: Whether the token was produced by the client (outbound) side.
        data: The raw token bytes.
    """

    __slots__ = ("_package_name", "_round_index", "_client", "_data")

    def __init__(
        self,
        package_name: str,
        round_index: int,
        client: bool,
        data: bytes,
    ) -> None:
        self._package_name = package_name
        self._round_index = round_index
        self._client = client
        self._data = bytes(data)

    @classmethod
    def parse(
        cls,
        package_name: str,
        round_index: int,
        client: bool,
        data: typing.Union[bytes, bytearray, memoryview],
    ) -> "AuthenticationToken":
        """Create a token from the raw provider output.

        Args:
            package_name: The name of the security package that produced the token.
            round_index: The index of the handshake round.
            client: Whether the token was produced by the client side.
            data: The raw bytes from the output token buffer.

        Returns:
            AuthenticationToken: The token for that round.
        """
        return cls(package_name, round_index, client, bytes(data))

    @property
    def package_name(self) -> str:
        return self._package_name

    @property
    def round_index(self) -> int:
        return self._round_index

    @property
    def client(self) -> bool:
        return self._client

    @property
    def data(self) -> bytes:
        return self._data

    def to_bytes(self) -> bytes:
        return self._data

    def to_base64(self) -> str:
        return base64.b64encode(self._data).decode()

    def __bytes__(self) -> bytes:
        return self._data

    def __len__(self) -> int:
        return len(self._data)

    def __bool__(self) -> bool:
        return True

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AuthenticationToken):
            return NotImplemented

        return (self._package_name, self._round_index, self._client, self._data) == \
            (other._package_name, other._round_index, other._client, other._data)

    def __hash__(self) -> int:
        return hash((self._package_name, self._round_index, self._client, self._data))

    def __setattr__(self, name: str, value: typing.Any) -> None:
        if hasattr(self, "_data"):
            raise AttributeError("AuthenticationToken is immutable")
        super().__setattr__(name, value)

    def __repr__(self) -> str:
        return "<{0}.{1}(package_name={2!r}, round_index={3}, client={4}, data={5!r})>".format(
            type(self).__module__, type(self).__name__, self._package_name, self._round_index, self._client,
            self._data)

    def __str__(self) -> str:
        direction = "client" if self._client else "server"
        return "%s %s token %d (%d bytes)" % (self._package_name, direction, self._round_index, len(self._data))
