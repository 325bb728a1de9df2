#!/usr/bin/python

import base64

import authctx
from authctx.loopback import LoopbackProvider


def main() -> None:
    provider = LoopbackProvider()
    c_cred = provider.acquire_credentials('user@DOMAIN.LOCAL', 'VagrantPass1')
    s_cred = provider.acquire_credentials('host/server', 'VagrantPass1')

    c = authctx.ClientAuthenticationContext(provider, c_cred, target='host/server',
                                            context_req=authctx.InitializeContextReqFlags.mutual_auth)

    s_handle = None
    out_token = c.continue_()
    while True:
        status, s_handle, in_token = provider.accept_context(s_cred, s_handle, out_token.data)
        if c.done:
            break

        out_token = c.continue_(in_token)

    print("Client Session key: %s" % base64.b64encode(c.session_key).decode('utf-8'))
    print("Server Session key: %s" % base64.b64encode(provider.query_session_key(s_handle)).decode('utf-8'))
    print("Context expires: %s" % c.expiry.isoformat())

    c_enc_msg = c.encrypt_message(b"Hello World", 0)
    print("Encrypted message: %s" % base64.b64encode(c_enc_msg.message).decode('utf-8'))
    print("Decrypted message: %s" % c.decrypt_message(c_enc_msg, 0).decode('utf-8'))

    c_sig = c.make_signature(b"data", 1)
    print("Signature valid: %s" % c.verify_signature(b"data", c_sig, 1))

    c.close()
    provider.delete_context(s_handle)


if __name__ == '__main__':
    main()
