# Copyright (C) 2022 Jesse P. Johnson <jpj6652@gmail.com>
# Copyright (C) 2012 W. Trevor King <wking@tremily.us>
#
# This file is part of gpg-mailer.
#
# gpg-mailer is free software: you can redistribute it and/or modify it under the
# terms of the GNU General Public License as published by the Free Software
# Foundation, either version 3 of the License, or (at your option) any later
# version.
#
# gpg-mailer is distributed in the hope that it will be useful, but WITHOUT ANY
# WARRANTY; without even the implied warranty of MERCHANTABILITY or FITNESS FOR
# A PARTICULAR PURPOSE.  See the GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License along with
# gpg-mailer.  If not, see <http://www.gnu.org/licenses/>.

"""Encrypt, sign and send email with OpenPGP.

Uses ``assuan`` to connect to ``gpgme-tool`` for the cryptography.
"""

import logging

from .crypt import Engine, EngineError, get_options
from .email import (
    EncodedMIMEText,
    attach_root,
    get_body_text,
    guess_encoding,
    header_from_text,
    with_body,
)
from .exceptions import (
    DecryptionError,
    EncryptionError,
    GPGMailerError,
    InvalidConfigurationError,
    KeyExportError,
    KeyImportError,
    NoIdentityError,
    NoSigningKeyError,
    SigningError,
    UnknownOptionError,
    VerificationError,
)
from .mailer import GPGMailer
from .transport import (
    FileTransport,
    InMemoryTransport,
    SMTPTransport,
    StreamTransport,
    Transport,
)

__author__ = 'Jesse P. Johnson'
__author_email__ = 'jpj6652@gmail.com'
__title__ = 'gpg-mailer'
__description__ = 'Send OpenPGP encrypted and signed email.'
__version__ = '0.1.0'
__license__ = 'GPL-3.0'
__all__ = [
    'GPGMailer',
    'Engine',
    'EngineError',
    'get_options',
    'Transport',
    'SMTPTransport',
    'FileTransport',
    'InMemoryTransport',
    'StreamTransport',
    'EncodedMIMEText',
    'attach_root',
    'get_body_text',
    'guess_encoding',
    'header_from_text',
    'with_body',
    'GPGMailerError',
    'KeyImportError',
    'KeyExportError',
    'EncryptionError',
    'DecryptionError',
    'SigningError',
    'VerificationError',
    'NoIdentityError',
    'NoSigningKeyError',
    'InvalidConfigurationError',
    'UnknownOptionError',
]


log = logging.getLogger(__name__)
log.setLevel(logging.ERROR)
log.addHandler(logging.StreamHandler())
