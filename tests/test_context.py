# -*- coding: utf-8 -*-
# Copyright: (c) 2020, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import datetime
import gc
import logging
import re

import pytest

import authctx.exceptions as exceptions
from authctx.buffers import SecurityBuffer, SecurityBufferType
from authctx.channel_bindings import ChannelBindings
from authctx.context import (
    MAX_TOKEN_SIZE,
    AuthenticationContext,
    ClientAuthenticationContext,
    ContextState,
    EncryptedMessage,
    wrap_system_error,
)
from authctx.provider import (
    ContextHandle,
    DataRepresentation,
    InitializeContextReqFlags,
    InitializeContextRetFlags,
    LastTokenStatus,
    SecStatus,
)
from authctx.token import AuthenticationToken

from .conftest import SERVICE_PRINCIPAL, ScriptedProvider, authenticate

CONTINUE = SecStatus.SEC_I_CONTINUE_NEEDED
COMPLETE = SecStatus.SEC_I_COMPLETE_NEEDED
COMPLETE_AND_CONTINUE = SecStatus.SEC_I_COMPLETE_AND_CONTINUE
OK = SecStatus.SEC_E_OK


def test_wrap_system_error():
    @wrap_system_error(exceptions.SecurityStatusError, "Context message")
    def func():
        raise exceptions.SecurityStatusError(0x80090308, "native failure")

    with pytest.raises(exceptions.InvalidTokenError, match="Context message") as err:
        func()

    assert err.value.status == 0x80090308
    assert isinstance(err.value.__cause__, exceptions.SecurityStatusError)


def test_wrap_system_error_other_error():
    @wrap_system_error(exceptions.SecurityStatusError)
    def func():
        raise ValueError("other")

    with pytest.raises(ValueError, match="other"):
        func()


def test_context_is_abstract():
    with pytest.raises(TypeError):
        AuthenticationContext()


def test_initial_state(scripted_cred):
    provider = ScriptedProvider([])
    ctx = ClientAuthenticationContext(provider, scripted_cred)

    assert ctx.state == ContextState.initial
    assert ctx.token is None
    assert not ctx.done
    assert ctx.flags is None
    assert ctx.expiry is None
    assert ctx.round_count == 0
    assert ctx.handle is None
    assert ctx.target is None
    assert ctx.data_rep == DataRepresentation.native
    assert ctx.package_name == "Scripted"
    assert repr(ctx) == "<authctx.context.ClientAuthenticationContext(package='Scripted', target=None, " \
                        "state=initial)>"


def test_allocate_memory_is_stripped(scripted_cred):
    provider = ScriptedProvider([(OK, b"token")])
    req = InitializeContextReqFlags.allocate_memory | InitializeContextReqFlags.mutual_auth
    ctx = ClientAuthenticationContext(provider, scripted_cred, context_req=req)

    assert ctx.context_req == InitializeContextReqFlags.mutual_auth

    ctx.continue_()
    assert provider.calls[0][1]["context_req"] == InitializeContextReqFlags.mutual_auth


def test_empty_target_is_none(scripted_cred):
    provider = ScriptedProvider([(OK, b"")])
    ctx = ClientAuthenticationContext(provider, scripted_cred, target="")
    ctx.continue_()

    assert ctx.target is None
    assert provider.calls[0][1]["target_name"] is None


@pytest.mark.parametrize("steps, expected_done", [
    ([(OK, b"1")], [True]),
    ([(CONTINUE, b"1"), (OK, b"2")], [False, True]),
    ([(COMPLETE_AND_CONTINUE, b"1"), (COMPLETE, b"2")], [False, True]),
    ([(CONTINUE, b"1"), (CONTINUE, b"2"), (OK, b"")], [False, False, True]),
    ([(SecStatus.SEC_I_CONTEXT_EXPIRED, b"1")], [True]),
])
def test_done_follows_status(scripted_cred, steps, expected_done):
    provider = ScriptedProvider(steps)
    ctx = ClientAuthenticationContext(provider, scripted_cred)

    token = None
    for idx, expected in enumerate(expected_done):
        token = ctx.continue_(token if idx == 0 else b"peer %d" % idx)

        assert ctx.done == expected
        assert ctx.round_count == idx + 1
        assert ctx.token is token
        assert token.round_index == idx
        assert token.client
        assert token.package_name == "Scripted"

    assert ctx.state == ContextState.established


def test_complete_token_called(scripted_cred):
    provider = ScriptedProvider([(COMPLETE_AND_CONTINUE, b"1"), (CONTINUE, b"2"), (COMPLETE, b"3")])
    ctx = ClientAuthenticationContext(provider, scripted_cred)

    ctx.continue_()
    ctx.continue_(b"peer 1")
    ctx.continue_(b"peer 2")

    names = [c[0] for c in provider.calls]
    assert names == ["initialize_context", "complete_token", "initialize_context", "initialize_context",
                     "complete_token"]
    assert ctx.done


def test_complete_token_failure(scripted_cred):
    provider = ScriptedProvider([(COMPLETE, b"1")], complete_status=SecStatus.SEC_E_INVALID_TOKEN)
    ctx = ClientAuthenticationContext(provider, scripted_cred)

    with pytest.raises(exceptions.InvalidTokenError, match="Completing security token"):
        ctx.continue_()

    assert ctx.state == ContextState.failed
    assert not ctx.done
    assert ctx.round_count == 0


def test_output_buffer_is_fixed_size(scripted_cred):
    provider = ScriptedProvider([(CONTINUE, b"1"), (OK, b"2")])
    ctx = ClientAuthenticationContext(provider, scripted_cred)

    ctx.continue_()
    ctx.continue_(b"peer")

    assert [c[1]["output_size"] for c in provider.calls] == [[MAX_TOKEN_SIZE], [MAX_TOKEN_SIZE]]


def test_input_buffers(scripted_cred):
    provider = ScriptedProvider([(CONTINUE, b"1"), (CONTINUE, b"2"), (OK, b"3")])
    ctx = ClientAuthenticationContext(provider, scripted_cred, channel_binding=b"bindings")

    ctx.continue_()
    ctx.continue_(b"peer 1")
    ctx.continue_(AuthenticationToken("Scripted", 1, False, b"peer 2"))

    inputs = [c[1]["input"] for c in provider.calls]
    assert inputs == [
        [(SecurityBufferType.channel_bindings, b"bindings")],
        [(SecurityBufferType.token, b"peer 1")],
        [(SecurityBufferType.token, b"peer 2")],
    ]


def test_channel_binding_structure(scripted_cred):
    bindings = ChannelBindings(application_data=b"tls-server-end-point:hash")
    provider = ScriptedProvider([(OK, b"1")])
    ctx = ClientAuthenticationContext(provider, scripted_cred, channel_binding=bindings)
    ctx.continue_()

    assert ctx.channel_binding == bindings.to_sec_channel_bindings()
    assert provider.calls[0][1]["input"] == [(SecurityBufferType.channel_bindings,
                                              bindings.to_sec_channel_bindings())]


def test_handle_passed_after_first_round(scripted_cred):
    provider = ScriptedProvider([(CONTINUE, b"1"), (OK, b"2")])
    ctx = ClientAuthenticationContext(provider, scripted_cred)

    ctx.continue_()
    ctx.continue_(b"peer")

    assert provider.calls[0][1]["handle"] is None
    assert provider.calls[1][1]["handle"] == ContextHandle(1)
    assert ctx.handle == ContextHandle(1)


def test_flags_and_expiry_recorded(scripted_cred):
    flags = InitializeContextRetFlags.mutual_auth | InitializeContextRetFlags.integrity
    provider = ScriptedProvider([(CONTINUE, b"1")], flags=flags)
    ctx = ClientAuthenticationContext(provider, scripted_cred)
    ctx.continue_()

    assert ctx.flags == flags
    assert ctx.expiry == provider.expiry


def test_failed_round_records_reply(scripted_cred):
    provider = ScriptedProvider([(CONTINUE, b"1"), (SecStatus.SEC_E_LOGON_DENIED, b"")],
                                flags=InitializeContextRetFlags.integrity)
    ctx = ClientAuthenticationContext(provider, scripted_cred)
    ctx.continue_()
    first_token = ctx.token

    provider.flags = InitializeContextRetFlags.confidentiality
    with pytest.raises(exceptions.LogonDeniedError, match="Processing security token") as err:
        ctx.continue_(b"peer")

    assert err.value.status == SecStatus.SEC_E_LOGON_DENIED
    assert ctx.flags == InitializeContextRetFlags.confidentiality
    assert ctx.state == ContextState.failed
    assert ctx.round_count == 1
    assert ctx.token is first_token
    assert not ctx.done

    with pytest.raises(exceptions.ProtocolMisuseError, match="A previous round failed"):
        ctx.continue_(b"peer")


@pytest.mark.parametrize("error", [
    exceptions.SecurityStatusError(SecStatus.SEC_E_INTERNAL_ERROR, "provider error"),
    RuntimeError("unexpected"),
])
def test_provider_raise_fails_context(scripted_cred, error):
    provider = ScriptedProvider([error, (OK, b"1")])
    ctx = ClientAuthenticationContext(provider, scripted_cred)

    with pytest.raises(type(error)):
        ctx.continue_()

    assert ctx.state == ContextState.failed
    assert ctx.round_count == 0
    assert ctx.token is None

    with pytest.raises(exceptions.ProtocolMisuseError, match="A previous round failed"):
        ctx.continue_()

    assert len(provider.steps) == 1


def test_replaced_handle_is_released(scripted_cred):
    provider = ScriptedProvider([(CONTINUE, b"1"), (OK, b"2")], handles=[ContextHandle(1), ContextHandle(2)])
    ctx = ClientAuthenticationContext(provider, scripted_cred)

    ctx.continue_()
    ctx.continue_(b"peer")

    assert provider.deleted == [ContextHandle(1)]
    assert ctx.handle == ContextHandle(2)

    ctx.close()
    assert provider.deleted == [ContextHandle(1), ContextHandle(2)]


def test_same_handle_is_kept(scripted_cred):
    provider = ScriptedProvider([(CONTINUE, b"1"), (OK, b"2")], handles=[ContextHandle(1), ContextHandle(1)])
    ctx = ClientAuthenticationContext(provider, scripted_cred)

    ctx.continue_()
    ctx.continue_(b"peer")

    assert provider.deleted == []
    assert ctx.handle == ContextHandle(1)


@pytest.mark.parametrize("status, expected", [
    (SecStatus.SEC_E_INVALID_TOKEN, exceptions.InvalidTokenError),
    (SecStatus.SEC_E_TARGET_UNKNOWN, exceptions.TargetUnknownError),
    (SecStatus.SEC_E_NO_CREDENTIALS, exceptions.NoCredentialsError),
    (SecStatus.SEC_E_BUFFER_TOO_SMALL, exceptions.ResourceExhaustionError),
    (SecStatus.SEC_E_BAD_BINDINGS, exceptions.BadBindingsError),
    (0x80091234, exceptions.ProviderFailureError),
])
def test_failure_status_mapping(scripted_cred, status, expected):
    provider = ScriptedProvider([(status, b"")])
    ctx = ClientAuthenticationContext(provider, scripted_cred)

    with pytest.raises(expected):
        ctx.continue_()

    assert ctx.state == ContextState.failed


def test_first_call_with_token_fails(scripted_cred):
    provider = ScriptedProvider([(OK, b"")])
    ctx = ClientAuthenticationContext(provider, scripted_cred)

    with pytest.raises(exceptions.ProtocolMisuseError, match="No input token is expected on the first round"):
        ctx.continue_(b"token")

    assert provider.calls == []
    assert ctx.state == ContextState.initial


def test_later_call_without_token_fails(scripted_cred):
    provider = ScriptedProvider([(CONTINUE, b"1")])
    ctx = ClientAuthenticationContext(provider, scripted_cred)
    ctx.continue_()

    with pytest.raises(exceptions.ProtocolMisuseError, match="An input token from the peer is required"):
        ctx.continue_()

    assert ctx.state == ContextState.negotiating


def test_continue_after_done_fails(scripted_cred):
    provider = ScriptedProvider([(OK, b"1")])
    ctx = ClientAuthenticationContext(provider, scripted_cred)
    ctx.continue_()

    with pytest.raises(exceptions.ProtocolMisuseError, match="Authentication is already done"):
        ctx.continue_(b"peer")


def test_continue_after_close_fails(scripted_cred):
    provider = ScriptedProvider([(CONTINUE, b"1")])
    ctx = ClientAuthenticationContext(provider, scripted_cred)
    ctx.continue_()
    ctx.close()

    with pytest.raises(exceptions.ProtocolMisuseError, match="The context has been closed"):
        ctx.continue_(b"peer")


def test_queries_before_handle(scripted_cred):
    ctx = ClientAuthenticationContext(ScriptedProvider([]), scripted_cred)

    for attr in ["session_key", "max_signature_size", "security_trailer_size", "last_token_status"]:
        with pytest.raises(exceptions.ProtocolMisuseError, match="no round has completed"):
            getattr(ctx, attr)

    with pytest.raises(exceptions.ProtocolMisuseError):
        ctx.get_authentication_package()


def test_queries(scripted_cred):
    ctx = ClientAuthenticationContext(ScriptedProvider([(OK, b"1")]), scripted_cred)
    ctx.continue_()

    assert ctx.session_key == b"\x01" * 16
    assert ctx.max_signature_size == 16
    assert ctx.security_trailer_size == 16
    assert ctx.last_token_status == LastTokenStatus.yes
    assert ctx.package_name == "Scripted"


def test_query_failure_is_converted(scripted_cred):
    ctx = ClientAuthenticationContext(ScriptedProvider([(OK, b"1")]), scripted_cred)
    ctx.continue_()

    with pytest.raises(exceptions.UnsupportedFunctionError, match="Retrieving package info") as err:
        ctx.get_authentication_package()

    assert isinstance(err.value.__cause__, exceptions.SecurityStatusError)


@pytest.mark.parametrize("method, args", [
    ("make_signature", (b"data", 0)),
    ("make_signature_buffers", ([SecurityBuffer(SecurityBufferType.data, b"data")], 0)),
    ("verify_signature", (b"data", b"sig", 0)),
    ("verify_signature_buffers", ([SecurityBuffer(SecurityBufferType.data, b"data")], b"sig", 0)),
    ("encrypt_message", (b"data", 0)),
    ("encrypt_message_buffers", ([SecurityBuffer(SecurityBufferType.data, b"data")], 0)),
    ("decrypt_message", (EncryptedMessage(b"data", b"sig"), 0)),
    ("decrypt_message_buffers", ([SecurityBuffer(SecurityBufferType.data, b"data")], b"sig", 0)),
])
def test_protection_before_established(scripted_cred, method, args):
    provider = ScriptedProvider([(CONTINUE, b"1")])
    ctx = ClientAuthenticationContext(provider, scripted_cred)
    ctx.continue_()

    expected = "Message protection requires an established context, current state is negotiating"
    with pytest.raises(exceptions.ProtocolMisuseError, match=re.escape(expected)):
        getattr(ctx, method)(*args)

    assert [c[0] for c in provider.calls] == ["initialize_context"]


@pytest.mark.parametrize("sequence_no", [-1, 0x100000000, 1.0, True])
def test_invalid_sequence_number(scripted_cred, sequence_no):
    ctx = ClientAuthenticationContext(ScriptedProvider([(OK, b"1")]), scripted_cred)
    ctx.continue_()

    with pytest.raises(ValueError, match="Sequence number must be an unsigned 32-bit integer"):
        ctx.make_signature(b"data", sequence_no)


def test_sequence_number_passed_through(scripted_cred):
    provider = ScriptedProvider([(OK, b"1")])
    ctx = ClientAuthenticationContext(provider, scripted_cred)
    ctx.continue_()

    assert ctx.make_signature(b"data", 0xFFFFFFFF) == b"\x02" * 16
    assert ctx.verify_signature(b"data", b"\x02" * 16, 10)
    assert provider.calls[-2:] == [("make_signature", 0xFFFFFFFF), ("verify_signature", 10)]


@pytest.mark.parametrize("status", [SecStatus.SEC_E_MESSAGE_ALTERED, SecStatus.SEC_E_OUT_OF_SEQUENCE])
def test_verify_mismatch_returns_false(scripted_cred, status):
    ctx = ClientAuthenticationContext(ScriptedProvider([(OK, b"1")], message_status=status), scripted_cred)
    ctx.continue_()

    assert ctx.verify_signature(b"data", b"sig", 0) is False


def test_verify_malformed_raises(scripted_cred):
    provider = ScriptedProvider([(OK, b"1")], message_status=SecStatus.SEC_E_INVALID_TOKEN)
    ctx = ClientAuthenticationContext(provider, scripted_cred)
    ctx.continue_()

    with pytest.raises(exceptions.InvalidTokenError, match="Verifying message"):
        ctx.verify_signature(b"data", b"sig", 0)


@pytest.mark.parametrize("status, expected", [
    (SecStatus.SEC_E_MESSAGE_ALTERED, exceptions.MessageAlteredError),
    (SecStatus.SEC_E_OUT_OF_SEQUENCE, exceptions.OutOfSequenceError),
    (SecStatus.SEC_E_CONTEXT_EXPIRED, exceptions.ContextExpiredError),
])
def test_decrypt_mismatch_raises(scripted_cred, status, expected):
    ctx = ClientAuthenticationContext(ScriptedProvider([(OK, b"1")], message_status=status), scripted_cred)
    ctx.continue_()

    with pytest.raises(expected, match="Decrypting message"):
        ctx.decrypt_message(EncryptedMessage(b"data", b"sig"), 0)


@pytest.mark.parametrize("method, extra_args", [
    ("make_signature_buffers", ()),
    ("verify_signature_buffers", (b"sig",)),
    ("encrypt_message_buffers", ()),
    ("decrypt_message_buffers", (b"sig",)),
])
def test_buffers_with_token_rejected(scripted_cred, method, extra_args):
    provider = ScriptedProvider([(OK, b"1")])
    ctx = ClientAuthenticationContext(provider, scripted_cred)
    ctx.continue_()

    token = SecurityBuffer(SecurityBufferType.token, b"\x00" * 24)
    buffers = [token, SecurityBuffer(SecurityBufferType.data, b"body")]

    with pytest.raises(ValueError, match="Message buffers cannot contain a token buffer"):
        getattr(ctx, method)(buffers, *extra_args, 1)

    assert token.data == b"\x00" * 24
    assert [c[0] for c in provider.calls] == ["initialize_context"]


def test_close_is_idempotent(scripted_cred):
    provider = ScriptedProvider([(OK, b"1")])
    ctx = ClientAuthenticationContext(provider, scripted_cred)
    ctx.continue_()

    ctx.close()
    ctx.close()

    assert provider.deleted == [ContextHandle(1)]
    assert ctx.state == ContextState.closed
    assert ctx.handle is None

    with pytest.raises(exceptions.ProtocolMisuseError):
        ctx.session_key


def test_close_without_handle(scripted_cred):
    provider = ScriptedProvider([])
    ctx = ClientAuthenticationContext(provider, scripted_cred)
    ctx.close()

    assert provider.deleted == []


def test_close_release_error_is_logged(scripted_cred, caplog):
    provider = ScriptedProvider([(OK, b"1")], delete_error=exceptions.SecurityStatusError(0x80090301))
    ctx = ClientAuthenticationContext(provider, scripted_cred)
    ctx.continue_()

    with caplog.at_level(logging.WARNING, logger="authctx.context"):
        ctx.close()

    assert "Failed to release security context handle 1" in caplog.text
    ctx.close()
    assert provider.deleted == [ContextHandle(1)]


def test_context_manager(scripted_cred):
    provider = ScriptedProvider([(OK, b"1")])

    with ClientAuthenticationContext(provider, scripted_cred) as ctx:
        ctx.continue_()

    assert provider.deleted == [ContextHandle(1)]
    assert ctx.state == ContextState.closed


def test_finalizer_releases_handle(scripted_cred):
    provider = ScriptedProvider([(OK, b"1")])
    ctx = ClientAuthenticationContext(provider, scripted_cred)
    ctx.continue_()

    del ctx
    gc.collect()

    assert provider.deleted == [ContextHandle(1)]


def test_close_does_not_affect_shared_credential(provider, client_cred, server_cred):
    ctx1 = ClientAuthenticationContext(provider, client_cred, target=SERVICE_PRINCIPAL)
    ctx2 = ClientAuthenticationContext(provider, client_cred, target=SERVICE_PRINCIPAL)
    server1 = authenticate(ctx1, provider, server_cred)
    server2 = authenticate(ctx2, provider, server_cred)

    ctx1.close()
    ctx1.close()

    signature = ctx2.make_signature(b"data", 1)
    assert ctx2.verify_signature(b"data", signature, 1)
    assert client_cred.principal == "user@DOMAIN.LOCAL"

    ctx2.close()
    provider.delete_context(server1)
    provider.delete_context(server2)
    assert len(provider) == 0


def test_mutual_auth_scenario(provider, client_cred, server_cred):
    ctx = ClientAuthenticationContext(provider, client_cred, context_req=InitializeContextReqFlags.mutual_auth,
                                      target="service/host")

    token = ctx.continue_()
    assert not ctx.done
    assert token.round_index == 0
    assert ctx.flags is not None

    status, server_handle, reply = provider.accept_context(server_cred, None, bytes(token))
    assert status == SecStatus.SEC_I_CONTINUE_NEEDED

    token = ctx.continue_(reply)
    assert ctx.done
    assert token.round_index == 1
    assert ctx.round_count == 2
    assert ctx.flags & InitializeContextRetFlags.mutual_auth
    assert ctx.expiry > datetime.datetime.now(datetime.timezone.utc)

    status, server_handle, reply = provider.accept_context(server_cred, server_handle, bytes(token))
    assert status == SecStatus.SEC_E_OK
    assert reply == b""

    ctx.close()
    provider.delete_context(server_handle)
