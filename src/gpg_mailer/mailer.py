# Copyright (C) 2022 Jesse P. Johnson <jpj6652@gmail.com>
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

"""Encrypt and sign outgoing mail before handing it to a transport."""

import logging
from copy import deepcopy
from email.message import Message
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Optional

from .crypt import SIGN_MODE_CLEAR, Engine, EngineError
from .email import get_body_text, with_body
from .exceptions import (
    DecryptionError,
    EncryptionError,
    InvalidConfigurationError,
    KeyExportError,
    KeyImportError,
    NoIdentityError,
    NoSigningKeyError,
    SigningError,
    UnknownOptionError,
    VerificationError,
)

if TYPE_CHECKING:
    from .transport import Transport

log = logging.getLogger(__name__)

EngineFactory = Callable[[Mapping[str, Any]], Engine]


class GPGMailer:
    """Send mail through ``transport``, encrypted and signed with OpenPGP.

    ``options`` are handed unchanged to ``engine_factory`` every time an
    operation needs the engine.  ``server_key`` is an armored private key;
    when given, its fingerprint becomes the identity used for signing and
    decrypting.
    """

    def __init__(
        self,
        transport: 'Transport',
        options: Optional[Mapping[str, Any]] = None,
        server_key: str = '',
        engine_factory: EngineFactory = Engine,
    ) -> None:
        self._transport = transport
        self._options: Dict[str, Any] = dict(options or {})
        self._engine_factory = engine_factory
        self.server_key_fingerprint = ''
        if server_key:
            self.server_key_fingerprint = self.import_key(server_key)

    def _session(self) -> Engine:
        return self._engine_factory(self._options)

    def export_key(self, fingerprint: str) -> str:
        """Get the armored public key for ``fingerprint``."""
        try:
            with self._session() as gpg:
                return gpg.export_public_key(fingerprint, armor=True)
        except EngineError as err:
            raise KeyExportError(
                f'Could not export fingerprint "{fingerprint}": {err.message}',
                err.code,
            ) from err

    def import_key(self, key: str) -> str:
        """Import an ASCII armored key and return its fingerprint."""
        try:
            with self._session() as gpg:
                return gpg.import_key(key)['fingerprint']
        except EngineError as err:
            raise KeyImportError(
                f"Could not import public key: {err.message}", err.code
            ) from err

    def decrypt(
        self, message: Message, passphrase: Optional[str] = None
    ) -> Message:
        """Decrypt the body of ``message`` with the server key."""
        if not self.server_key_fingerprint:
            raise NoIdentityError('No decryption key provided')
        try:
            with self._session() as gpg:
                gpg.add_decrypt_key(self.server_key_fingerprint, passphrase)
                decrypted = gpg.decrypt(get_body_text(message))
        except EngineError as err:
            raise DecryptionError(
                f"Could not decrypt message: {err.message}", err.code
            ) from err
        return with_body(message, decrypted)

    def encrypt(self, message: Message, fingerprint: str) -> Message:
        """Encrypt the body of ``message`` to the key ``fingerprint``."""
        try:
            with self._session() as gpg:
                gpg.add_encrypt_key(fingerprint)
                encrypted = gpg.encrypt(get_body_text(message), armor=True)
        except EngineError as err:
            raise EncryptionError(
                f'Could not encrypt message to "{fingerprint}": '
                f"{err.message}",
                err.code,
            ) from err
        return with_body(message, encrypted)

    def encrypt_and_sign(self, message: Message, fingerprint: str) -> Message:
        """Encrypt to ``fingerprint`` and sign with the server key."""
        if not self.server_key_fingerprint:
            raise NoSigningKeyError('No signing key provided')
        try:
            with self._session() as gpg:
                gpg.add_encrypt_key(fingerprint)
                gpg.add_sign_key(self.server_key_fingerprint)
                encrypted = gpg.encrypt_and_sign(
                    get_body_text(message), armor=True
                )
        except EngineError as err:
            raise EncryptionError(
                f'Could not encrypt and sign message to "{fingerprint}": '
                f"{err.message}",
                err.code,
            ) from err
        return with_body(message, encrypted)

    def sign(self, message: Message) -> Message:
        """Clear-sign the body of ``message``, without encrypting it."""
        if not self.server_key_fingerprint:
            raise NoSigningKeyError('No signing key provided')
        try:
            with self._session() as gpg:
                gpg.add_sign_key(self.server_key_fingerprint)
                signed = gpg.sign(
                    get_body_text(message), mode=SIGN_MODE_CLEAR, armor=True
                )
        except EngineError as err:
            raise SigningError(
                f"Could not sign message: {err.message}", err.code
            ) from err
        return with_body(message, signed)

    def verify(self, message: Message, fingerprint: str) -> bool:
        """Whether ``message`` carries a good signature by ``fingerprint``.

        A missing or bad signature is ``False``; only engine failures raise.
        """
        try:
            with self._session() as gpg:
                keys = [
                    key
                    for key in gpg.get_keys(fingerprint)
                    if key.matches(fingerprint)
                ]
                if not keys:
                    raise EngineError(f'no key found for "{fingerprint}"')
                signatures = gpg.verify(get_body_text(message))
        except EngineError as err:
            raise VerificationError(
                'An error occurred trying to verify this message: '
                f"{err.message}",
                err.code,
            ) from err
        for sig in signatures:
            if not sig.is_valid():
                log.debug('bad signature from %s', sig.fingerprint)
                continue
            if any(key.matches(sig.fingerprint or '') for key in keys):
                return True
        return False

    def send(self, message: Message, fingerprint: str) -> None:
        """Encrypt, and sign if we have a server key, then send."""
        if self.server_key_fingerprint:
            # Encrypted, signed
            secured = self.encrypt_and_sign(message, fingerprint)
        else:
            # Encrypted, unsigned
            secured = self.encrypt(message, fingerprint)
        log.info('send encrypted message to %s', message['to'])
        self._transport.send(secured)

    def send_unencrypted(self, message: Message, force: bool = False) -> None:
        """Send ``message`` signed but not encrypted.

        Without a server key nothing is sent, unless ``force`` is set, in
        which case the message goes out as plain text.
        """
        if not self.server_key_fingerprint:
            if not force:
                log.warning(
                    'no signing key, not sending unsigned message to %s',
                    message['to'],
                )
                return
            # Unencrypted, unsigned
            log.info('send plain message to %s', message['to'])
            self._transport.send(deepcopy(message))
            return
        # Unencrypted, signed
        signed = self.sign(message)
        log.info('send signed message to %s', message['to'])
        self._transport.send(signed)

    def get_option(self, key: str) -> Any:
        if key not in self._options:
            raise UnknownOptionError(f"Key {key} not defined")
        return self._options[key]

    def get_options(self) -> Dict[str, Any]:
        return dict(self._options)

    def set_option(self, key: str, value: Any) -> 'GPGMailer':
        """Override an option at runtime.

        The new configuration must be accepted by the engine before it
        replaces the current one.
        """
        options = dict(self._options)
        options[key] = value
        try:
            with self._engine_factory(options):
                pass
        except EngineError as err:
            raise InvalidConfigurationError(
                f'Could not set option "{key}": {err.message}', err.code
            ) from err
        self._options = options
        return self

    def set_private_key(self, server_key: str) -> 'GPGMailer':
        """Sets the private key for signing."""
        self.server_key_fingerprint = self.import_key(server_key)
        return self

    def get_transport(self) -> 'Transport':
        return self._transport

    def set_transport(self, transport: 'Transport') -> 'GPGMailer':
        self._transport = transport
        return self
