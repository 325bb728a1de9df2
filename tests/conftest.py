# -*- coding: utf-8 -*-
# Copyright: (c) 2020, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import datetime
import typing

import pytest

from authctx.buffers import SecurityBufferType
from authctx.context import ClientAuthenticationContext
from authctx.exceptions import SecurityStatusError
from authctx.loopback import LoopbackProvider
from authctx.provider import (
    ContextHandle,
    CredentialHandle,
    InitializeContextResult,
    InitializeContextRetFlags,
    LastTokenStatus,
    SecStatus,
    SecurityProvider,
)

SECRET = "Pӓ$sw0r̈d"
CLIENT_PRINCIPAL = "user@DOMAIN.LOCAL"
SERVICE_PRINCIPAL = "service/host"


def authenticate(
    client: ClientAuthenticationContext,
    provider: LoopbackProvider,
    server_cred: CredentialHandle,
    channel_bindings: typing.Optional[bytes] = None,
) -> ContextHandle:
    """Runs the full exchange between the client and a loopback acceptor, returns the acceptor handle."""
    server_handle = None
    token = client.continue_()

    while True:
        status, server_handle, server_token = provider.accept_context(server_cred, server_handle, bytes(token),
                                                                      channel_bindings=channel_bindings)
        assert not SecStatus.is_failure(status)

        if client.done:
            break

        token = client.continue_(server_token)

    assert status == SecStatus.SEC_E_OK
    return server_handle


@pytest.fixture()
def provider() -> LoopbackProvider:
    return LoopbackProvider()


@pytest.fixture()
def client_cred(provider) -> CredentialHandle:
    return provider.acquire_credentials(CLIENT_PRINCIPAL, SECRET)


@pytest.fixture()
def server_cred(provider) -> CredentialHandle:
    return provider.acquire_credentials(SERVICE_PRINCIPAL, SECRET)


@pytest.fixture()
def established(provider, client_cred, server_cred):
    ctx = ClientAuthenticationContext(provider, client_cred, target=SERVICE_PRINCIPAL)
    server_handle = authenticate(ctx, provider, server_cred)

    yield ctx, server_handle

    ctx.close()
    provider.delete_context(server_handle)


class ScriptedProvider(SecurityProvider):
    """A provider that replies to each handshake step with the next scripted status.

    Each entry of `steps` is a tuple of the status and the output token, or an
    exception to raise. The handle returned by a step is the next entry of
    `handles` when set, otherwise the current handle. Every provider call is
    recorded in `calls`.
    """

    def __init__(
        self,
        steps: typing.List[typing.Union[typing.Tuple[int, bytes], Exception]],
        handles: typing.Optional[typing.List[ContextHandle]] = None,
        flags: InitializeContextRetFlags = InitializeContextRetFlags.integrity,
        complete_status: int = SecStatus.SEC_E_OK,
        message_status: int = SecStatus.SEC_E_OK,
        delete_error: typing.Optional[Exception] = None,
    ) -> None:
        self.steps = list(steps)
        self.handles = list(handles or [])
        self.flags = flags
        self.complete_status = complete_status
        self.message_status = message_status
        self.delete_error = delete_error
        self.expiry = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(hours=1)
        self.calls: typing.List[typing.Tuple[str, typing.Any]] = []
        self.deleted: typing.List[ContextHandle] = []

    def initialize_context(self, credential, handle, target_name, context_req, data_rep, input_buffers,
                           output_buffers):
        self.calls.append(("initialize_context", {
            "handle": handle,
            "target_name": target_name,
            "context_req": context_req,
            "data_rep": data_rep,
            "input": [(b.buffer_type, bytes(b.data)) for b in input_buffers or []],
            "output_size": [len(b.data) for b in output_buffers],
        }))
        step = self.steps.pop(0)
        if isinstance(step, Exception):
            raise step

        status, token = step
        out = output_buffers.first(SecurityBufferType.token)
        out.data[:] = token

        if self.handles:
            handle = self.handles.pop(0)

        return InitializeContextResult(status, self.flags, self.expiry, handle or ContextHandle(1))

    def complete_token(self, handle, buffers):
        self.calls.append(("complete_token", handle))
        return self.complete_status

    def delete_context(self, handle):
        self.calls.append(("delete_context", handle))
        self.deleted.append(handle)
        if self.delete_error:
            raise self.delete_error

    def query_session_key(self, handle):
        return b"\x01" * 16

    def query_max_signature_size(self, handle):
        return 16

    def query_security_trailer_size(self, handle):
        return 16

    def query_last_token_status(self, handle):
        return LastTokenStatus.yes

    def query_package_name(self, handle):
        return "Scripted"

    def query_package_info(self, handle):
        raise SecurityStatusError(SecStatus.SEC_E_UNSUPPORTED_FUNCTION, "Package info not available")

    def make_signature(self, handle, qop, buffers, sequence_no):
        self.calls.append(("make_signature", sequence_no))
        buffers.first(SecurityBufferType.token).data[:] = b"\x02" * 16
        return self.message_status

    def verify_signature(self, handle, buffers, sequence_no):
        self.calls.append(("verify_signature", sequence_no))
        return self.message_status

    def encrypt_message(self, handle, qop, buffers, sequence_no):
        self.calls.append(("encrypt_message", sequence_no))
        return self.message_status

    def decrypt_message(self, handle, buffers, sequence_no):
        self.calls.append(("decrypt_message", sequence_no))
        return self.message_status


@pytest.fixture()
def scripted_cred() -> CredentialHandle:
    return CredentialHandle("Scripted", object(), principal="user")
