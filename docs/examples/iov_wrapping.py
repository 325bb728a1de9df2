#!/usr/bin/python

import struct

import authctx
from authctx._sspi import SSPIProvider


def exchange_data(data: bytes) -> bytes:
    # Insert code to send to acceptor and receive token
    return b""


def main() -> None:
    provider = SSPIProvider()
    cred = provider.acquire_credentials("Kerberos")

    with authctx.ClientAuthenticationContext(provider, cred, target="host/server") as client:
        in_token = None
        while not client.done:
            out_token = client.continue_(in_token)
            if not out_token.data:
                break

            in_token = exchange_data(out_token.data)

        # The header is signed but sent in plaintext, only the body is encrypted.
        header = authctx.SecurityBuffer(authctx.SecurityBufferType.data, b"message header", read_only=True)
        body = authctx.SecurityBuffer(authctx.SecurityBufferType.data, b"my secret")
        signature = client.encrypt_message_buffers([header, body], 0)

        enc_payload = struct.pack("<I", len(signature)) + signature + struct.pack("<I", len(header)) + \
            bytes(header) + bytes(body)

        resp = exchange_data(enc_payload)
        sig_len = struct.unpack("<I", resp[:4])[0]
        signature = resp[4:4 + sig_len]
        header_len = struct.unpack("<I", resp[4 + sig_len:8 + sig_len])[0]
        header_data = resp[8 + sig_len:8 + sig_len + header_len]

        header = authctx.SecurityBuffer(authctx.SecurityBufferType.data, header_data, read_only=True)
        body = authctx.SecurityBuffer(authctx.SecurityBufferType.data, resp[8 + sig_len + header_len:])
        client.decrypt_message_buffers([header, body], signature, 1)

        print("Server response: %s" % body.data.decode('utf-8'))


if __name__ == '__main__':
    main()
