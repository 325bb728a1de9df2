#!/usr/bin/python

import authctx
from authctx._sspi import SSPIProvider


def exchange_data(data: bytes) -> bytes:
    # Insert code to send to acceptor and receive token
    return b""


def main() -> None:
    provider = SSPIProvider()
    cred = provider.acquire_credentials("Negotiate", username="username", password="password", domain="DOMAIN")
    req = authctx.InitializeContextReqFlags.mutual_auth | authctx.InitializeContextReqFlags.confidentiality

    with authctx.ClientAuthenticationContext(provider, cred, context_req=req, target="host/server") as client:
        in_token = None
        while not client.done:
            out_token = client.continue_(in_token)
            if not out_token.data:
                break

            in_token = exchange_data(out_token.data)

        print("Negotiated package: %s" % client.package_name)

        enc_data = client.encrypt_message(b"my secret", 0)

        resp = exchange_data(enc_data.signature + enc_data.message)
        sig_len = client.security_trailer_size
        dec_data = client.decrypt_message(authctx.EncryptedMessage(resp[sig_len:], resp[:sig_len]), 1)

        print("Server response: %s" % dec_data.decode("utf-8"))


if __name__ == "__main__":
    main()
