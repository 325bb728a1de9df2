# Copyright: (c) 2020, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import json
import logging
import logging.config
import os

from authctx._version import __version__
from authctx.buffers import BufferSet, SecurityBuffer, SecurityBufferType
from authctx.channel_bindings import ChannelBindings
from authctx.context import (
    AuthenticationContext,
    ClientAuthenticationContext,
    ContextState,
    EncryptedMessage,
)
from authctx.exceptions import AuthContextError, ErrorCode
from authctx.provider import (
    CredentialHandle,
    DataRepresentation,
    InitializeContextReqFlags,
    InitializeContextRetFlags,
    SecStatus,
    SecurityProvider,
)
from authctx.token import AuthenticationToken

__all__ = [
    '__version__',
    'AuthContextError',
    'AuthenticationContext',
    'AuthenticationToken',
    'BufferSet',
    'ChannelBindings',
    'ClientAuthenticationContext',
    'ContextState',
    'CredentialHandle',
    'DataRepresentation',
    'EncryptedMessage',
    'ErrorCode',
    'InitializeContextReqFlags',
    'InitializeContextRetFlags',
    'SecStatus',
    'SecurityBuffer',
    'SecurityBufferType',
    'SecurityProvider',
]


def _setup_logging(logger: logging.Logger) -> None:
    log_path = os.environ.get('AUTHCTX_LOG_CFG', None)

    if log_path is not None and os.path.exists(log_path):  # pragma: no cover
        # log log config from JSON file
        with open(log_path, 'rt') as f:
            config = json.load(f)

        logging.config.dictConfig(config)
    else:
        # no logging was provided
        logger.addHandler(logging.NullHandler())


logger = logging.getLogger(__name__)
_setup_logging(logger)
